from fastapi import FastAPI, APIRouter, UploadFile, File, HTTPException, Query, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging

# Setup logging early
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)
from pydantic import BaseModel
from typing import List, Optional, Dict, Any, Type
import asyncio
import html
import re
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from pymongo import ReturnDocument
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, Email as SGEmail
import jwt
from passlib.context import CryptContext
import os

from . import assistant, config, guard_engine
from .csv_import import import_alumnes_async, parse_alumnes_csv
from .models import (
    AlumneBase,
    AlumneRecord,
    AlumneUpdate,
    AnyAcademicBase,
    AnyAcademicRecord,
    AnyAcademicUpdate,
    AssignacioBase,
    AssignacioRecord,
    AssignacioUpdate,
    AulaBase,
    AulaRecord,
    AulaUpdate,
    AuthLogin,
    AuthUser,
    AutoAssignRequest,
    AutoAssignResponse,
    ChatRequest,
    ChatResponse,
    ComunicacioCreate,
    ComunicacioRecord,
    GrupBase,
    GrupRecord,
    GrupUpdate,
    GuardStats,
    GuardiaBase,
    GuardiaRecord,
    GuardiaUpdate,
    HorariBase,
    HorariRecord,
    HorariUpdate,
    ImportResult,
    LoginResponse,
    MateriaBase,
    MateriaRecord,
    MateriaUpdate,
    MessageResponse,
    MetricRecord,
    ProfessorBase,
    ProfessorCreate,
    ProfessorRecord,
    ProfessorUpdate,
    SortidaBase,
    SortidaRecord,
    SortidaUpdate,
    TascaBase,
    TascaRecord,
    TascaUpdate,
    WorkloadEntry,
)

try:
    client = AsyncIOMotorClient(config.get_mongo_url(), serverSelectionTimeoutMS=5000)
except ValueError:
    raise
except Exception as e:
    logger.error(f"Failed to create MongoDB client: {e}")
    raise

db = client[config.DB_NAME]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

PROFESSOR_PROJECTION = {"_id": 0, "password_hash": 0}


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: Dict[str, Any], expires_minutes: int = config.JWT_EXPIRES_MINUTES):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    secret = config.get_jwt_secret()
    if not secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    return jwt.encode(to_encode, secret, algorithm=config.JWT_ALGORITHM)


def format_expires_in(minutes: int) -> str:
    if minutes % (60 * 24) == 0:
        return f"{minutes // (60 * 24)}d"
    if minutes % 60 == 0:
        return f"{minutes // 60}h"
    return f"{minutes}m"


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = credentials.credentials
    secret = config.get_jwt_secret()
    if not secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    try:
        payload = jwt.decode(token, secret, algorithms=[config.JWT_ALGORITHM])
        user_id = int(payload.get("sub"))
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = await db.professors.find_one({"id": user_id}, PROFESSOR_PROJECTION)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def require_admin(current_user: Dict[str, Any] = Depends(get_current_user)):
    if current_user.get("rol") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Accés denegat - Permisos insuficients")
    return current_user


def to_auth_user(professor: Dict[str, Any]) -> AuthUser:
    return AuthUser(
        id=professor["id"],
        email=professor["email"],
        nom=professor["nom"],
        cognoms=professor["cognoms"],
        rol=professor.get("rol", "professor"),
        any_academic_id=professor.get("any_academic_id"),
    )


app = FastAPI(title="Gestió de Guàrdies")
auth_router = APIRouter(prefix="/api/auth")
api_router = APIRouter(prefix="/api", dependencies=[Depends(get_current_user)])


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/logout", response_model=MessageResponse)
async def legacy_logout():
    return MessageResponse(message="Logout correcte. Elimina el token del client.")


# === Storage helpers ===

async def next_id(sequence: str) -> int:
    counter = await db.counters.find_one_and_update(
        {"_id": sequence},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


async def get_active_year() -> Optional[Dict[str, Any]]:
    return await db.anys_academics.find_one({"estat": "actiu"}, {"_id": 0})


async def resolve_academic_year(requested: Optional[int]) -> int:
    if requested is not None:
        return requested
    active = await get_active_year()
    if not active:
        raise HTTPException(status_code=400, detail="No hi ha cap any acadèmic actiu")
    return active["id"]


def build_query(**filters: Any) -> Dict[str, Any]:
    return {key: value for key, value in filters.items() if value is not None}


async def list_documents(collection: str, query: Dict[str, Any], sort: Optional[list] = None, limit: int = 5000):
    cursor = db[collection].find(query, {"_id": 0})
    cursor = cursor.sort(sort or [("id", 1)]).limit(limit)
    return await cursor.to_list(None)


async def create_record(
    collection: str,
    record_cls: Type[BaseModel],
    payload: BaseModel,
    stored_extra: Optional[Dict[str, Any]] = None,
):
    data = payload.model_dump()
    if "any_academic_id" in record_cls.model_fields:
        data["any_academic_id"] = await resolve_academic_year(data.get("any_academic_id"))
    data["id"] = await next_id(collection)
    record = record_cls(**data)
    document = record.model_dump()
    if stored_extra:
        document.update(stored_extra)
    await db[collection].insert_one(document)
    return record


async def update_document(collection: str, doc_id: int, update_data: Dict[str, Any], not_found: str):
    if not update_data:
        existing = await db[collection].find_one({"id": doc_id}, {"_id": 0})
        if not existing:
            raise HTTPException(status_code=404, detail=not_found)
        return existing
    result = await db[collection].find_one_and_update(
        {"id": doc_id}, {"$set": update_data}, return_document=ReturnDocument.AFTER
    )
    if not result:
        raise HTTPException(status_code=404, detail=not_found)
    result.pop("_id", None)
    return result


def changed_fields(payload: BaseModel) -> Dict[str, Any]:
    return {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}


async def delete_document(collection: str, doc_id: int, not_found: str):
    result = await db[collection].delete_one({"id": doc_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail=not_found)
    return {"status": "deleted"}


async def log_metric(
    accio: str,
    current_user: Optional[Dict[str, Any]],
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    detalls: Optional[Dict[str, Any]] = None,
    any_academic_id: Optional[int] = None,
):
    try:
        metric = MetricRecord(
            id=await next_id("metrics"),
            any_academic_id=any_academic_id,
            accio=accio,
            usuari_id=current_user.get("id") if current_user else None,
            detalls=detalls or {},
            entity_type=entity_type,
            entity_id=entity_id,
        )
        await db.metrics.insert_one(metric.model_dump())
    except Exception as exc:
        logger.error("Failed to log metric %s: %s", accio, exc)


# === Email ===

def get_sender_identity() -> SGEmail:
    sender_email = os.environ.get("SENDER_EMAIL", "")
    sender_name = os.environ.get("SENDER_NAME")
    if sender_name:
        return SGEmail(sender_email, sender_name)
    return SGEmail(sender_email)


def send_communication_email(recipients: List[str], subject: str, body: str) -> bool:
    api_key = os.environ.get("SENDGRID_API_KEY")
    if not api_key:
        logger.warning("Email skipped: SENDGRID_API_KEY not configured")
        return False
    message = Mail(
        from_email=get_sender_identity(),
        to_emails=recipients,
        subject=subject,
        html_content=f"<p>{html.escape(body)}</p>",
    )
    SendGridAPIClient(api_key).send(message)
    return True


@api_router.get("/")
async def root():
    return {"message": "Gestió de Guàrdies API is running"}


# === Auth ===

@auth_router.post("/login", response_model=LoginResponse)
async def login(payload: AuthLogin):
    try:
        email = payload.email.strip()
        if not email or not payload.password:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email i contrasenya són obligatoris")
        pattern = f"^{re.escape(email)}$"
        professor = await db.professors.find_one({"email": {"$regex": pattern, "$options": "i"}}, {"_id": 0})
        stored_hash = (professor or {}).get("password_hash") or ""
        if not stored_hash or not verify_password(payload.password, stored_hash):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credencials incorrectes")
        token = create_access_token(
            {
                "sub": str(professor["id"]),
                "rol": professor.get("rol", "professor"),
                "any_academic_id": professor.get("any_academic_id"),
            }
        )
        logger.info("Login correcte: %s", email)
        return LoginResponse(
            token=token,
            user=to_auth_user(professor),
            expires_in=format_expires_in(config.JWT_EXPIRES_MINUTES),
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Login failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database or server temporarily unavailable. Try again in a moment.",
        )


@auth_router.get("/me", response_model=AuthUser)
async def get_me(current_user: Dict[str, Any] = Depends(get_current_user)):
    return to_auth_user(current_user)


@auth_router.post("/logout", response_model=MessageResponse)
async def logout():
    return MessageResponse(message="Logout correcte. Elimina el token del client.")


# === Academic years ===

async def demote_other_active_years(keep_id: int):
    result = await db.anys_academics.update_many(
        {"estat": "actiu", "id": {"$ne": keep_id}}, {"$set": {"estat": "inactiu"}}
    )
    if result.modified_count:
        logger.info("Deactivated %s academic year(s) in favour of %s", result.modified_count, keep_id)


@api_router.get("/anys-academics", response_model=List[AnyAcademicRecord])
async def get_anys_academics():
    return await list_documents("anys_academics", {}, sort=[("data_inici", -1)])


@api_router.get("/anys-academics/active", response_model=AnyAcademicRecord)
async def get_active_any_academic():
    active = await get_active_year()
    if not active:
        raise HTTPException(status_code=404, detail="No hi ha cap any acadèmic actiu")
    return active


@api_router.post("/anys-academics", response_model=AnyAcademicRecord)
async def create_any_academic(payload: AnyAcademicBase, current_user: Dict[str, Any] = Depends(require_admin)):
    data = payload.model_dump()
    data["id"] = await next_id("anys_academics")
    record = AnyAcademicRecord(**data)
    if record.estat == "actiu":
        await demote_other_active_years(record.id)
    await db.anys_academics.insert_one(record.model_dump())
    return record


@api_router.put("/anys-academics/{any_id}", response_model=AnyAcademicRecord)
async def update_any_academic(any_id: int, payload: AnyAcademicUpdate, current_user: Dict[str, Any] = Depends(require_admin)):
    update_data = changed_fields(payload)
    if update_data.get("estat") == "actiu":
        if not await db.anys_academics.find_one({"id": any_id}):
            raise HTTPException(status_code=404, detail="Any acadèmic no trobat")
        await demote_other_active_years(any_id)
    return await update_document("anys_academics", any_id, update_data, "Any acadèmic no trobat")


@api_router.delete("/anys-academics/{any_id}")
async def delete_any_academic(any_id: int, current_user: Dict[str, Any] = Depends(require_admin)):
    return await delete_document("anys_academics", any_id, "Any acadèmic no trobat")


# === Professors ===

async def ensure_email_available(email: str, exclude_id: Optional[int] = None):
    pattern = f"^{re.escape(email.strip())}$"
    query: Dict[str, Any] = {"email": {"$regex": pattern, "$options": "i"}}
    if exclude_id is not None:
        query["id"] = {"$ne": exclude_id}
    if await db.professors.find_one(query):
        raise HTTPException(status_code=400, detail="Aquest email ja està registrat")


@api_router.get("/professors", response_model=List[ProfessorRecord])
async def get_professors(any_academic_id: Optional[int] = Query(default=None)):
    query = build_query(any_academic_id=any_academic_id)
    return await db.professors.find(query, PROFESSOR_PROJECTION).sort([("cognoms", 1), ("nom", 1)]).to_list(5000)


@api_router.post("/professors", response_model=ProfessorRecord)
async def create_professor(payload: ProfessorCreate, current_user: Dict[str, Any] = Depends(require_admin)):
    await ensure_email_available(payload.email)
    stored_extra = {"password_hash": get_password_hash(payload.password)} if payload.password else None
    professor_data = ProfessorBase(**payload.model_dump(exclude={"password"}))
    record = await create_record("professors", ProfessorRecord, professor_data, stored_extra)
    await log_metric("crear_professor", current_user, "professor", record.id, any_academic_id=record.any_academic_id)
    return record


@api_router.put("/professors/{professor_id}", response_model=ProfessorRecord)
async def update_professor(professor_id: int, payload: ProfessorUpdate, current_user: Dict[str, Any] = Depends(require_admin)):
    update_data = changed_fields(payload)
    if "email" in update_data:
        await ensure_email_available(update_data["email"], exclude_id=professor_id)
    password = update_data.pop("password", None)
    if password:
        update_data["password_hash"] = get_password_hash(password)
    return await update_document("professors", professor_id, update_data, "Professor no trobat")


@api_router.delete("/professors/{professor_id}")
async def delete_professor(professor_id: int, current_user: Dict[str, Any] = Depends(require_admin)):
    return await delete_document("professors", professor_id, "Professor no trobat")


# === Groups ===

@api_router.get("/grups", response_model=List[GrupRecord])
async def get_grups(any_academic_id: Optional[int] = Query(default=None)):
    return await list_documents("grups", build_query(any_academic_id=any_academic_id), sort=[("nom_grup", 1)])


@api_router.post("/grups", response_model=GrupRecord)
async def create_grup(payload: GrupBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    record = await create_record("grups", GrupRecord, payload)
    await log_metric("crear_grup", current_user, "grup", record.id, any_academic_id=record.any_academic_id)
    return record


@api_router.put("/grups/{grup_id}", response_model=GrupRecord)
async def update_grup(grup_id: int, payload: GrupUpdate):
    return await update_document("grups", grup_id, changed_fields(payload), "Grup no trobat")


@api_router.delete("/grups/{grup_id}")
async def delete_grup(grup_id: int):
    return await delete_document("grups", grup_id, "Grup no trobat")


# === Students ===

@api_router.get("/alumnes", response_model=List[AlumneRecord])
async def get_alumnes(
    grup_id: Optional[int] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(grup_id=grup_id, any_academic_id=any_academic_id)
    return await list_documents("alumnes", query, sort=[("cognoms", 1), ("nom", 1)])


@api_router.post("/alumnes", response_model=AlumneRecord)
async def create_alumne(payload: AlumneBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    record = await create_record("alumnes", AlumneRecord, payload)
    await log_metric("crear_alumne", current_user, "alumne", record.id, any_academic_id=record.any_academic_id)
    return record


@api_router.put("/alumnes/{alumne_id}", response_model=AlumneRecord)
async def update_alumne(alumne_id: int, payload: AlumneUpdate):
    return await update_document("alumnes", alumne_id, changed_fields(payload), "Alumne no trobat")


@api_router.delete("/alumnes/{alumne_id}")
async def delete_alumne(alumne_id: int):
    return await delete_document("alumnes", alumne_id, "Alumne no trobat")


# === Classrooms ===

@api_router.get("/aules", response_model=List[AulaRecord])
async def get_aules(any_academic_id: Optional[int] = Query(default=None)):
    return await list_documents("aules", build_query(any_academic_id=any_academic_id), sort=[("nom_aula", 1)])


@api_router.post("/aules", response_model=AulaRecord)
async def create_aula(payload: AulaBase):
    return await create_record("aules", AulaRecord, payload)


@api_router.put("/aules/{aula_id}", response_model=AulaRecord)
async def update_aula(aula_id: int, payload: AulaUpdate):
    return await update_document("aules", aula_id, changed_fields(payload), "Aula no trobada")


@api_router.delete("/aules/{aula_id}")
async def delete_aula(aula_id: int):
    return await delete_document("aules", aula_id, "Aula no trobada")


# === Subjects ===

@api_router.get("/materies", response_model=List[MateriaRecord])
async def get_materies(any_academic_id: Optional[int] = Query(default=None)):
    return await list_documents("materies", build_query(any_academic_id=any_academic_id), sort=[("nom", 1)])


@api_router.post("/materies", response_model=MateriaRecord)
async def create_materia(payload: MateriaBase):
    return await create_record("materies", MateriaRecord, payload)


@api_router.put("/materies/{materia_id}", response_model=MateriaRecord)
async def update_materia(materia_id: int, payload: MateriaUpdate):
    return await update_document("materies", materia_id, changed_fields(payload), "Matèria no trobada")


@api_router.delete("/materies/{materia_id}")
async def delete_materia(materia_id: int):
    return await delete_document("materies", materia_id, "Matèria no trobada")


# === Schedules ===

@api_router.get("/horaris", response_model=List[HorariRecord])
async def get_horaris(
    professor_id: Optional[int] = Query(default=None),
    dia_setmana: Optional[int] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(professor_id=professor_id, dia_setmana=dia_setmana, any_academic_id=any_academic_id)
    return await list_documents("horaris", query, sort=[("dia_setmana", 1), ("hora_inici", 1)], limit=20000)


def check_slot_order(hora_inici: str, hora_fi: str):
    if hora_fi <= hora_inici:
        raise HTTPException(status_code=400, detail="L'hora de fi ha de ser posterior a la d'inici")


@api_router.post("/horaris", response_model=HorariRecord)
async def create_horari(payload: HorariBase):
    check_slot_order(payload.hora_inici, payload.hora_fi)
    return await create_record("horaris", HorariRecord, payload)


@api_router.put("/horaris/{horari_id}", response_model=HorariRecord)
async def update_horari(horari_id: int, payload: HorariUpdate):
    update_data = changed_fields(payload)
    if "hora_inici" in update_data or "hora_fi" in update_data:
        existing = await db.horaris.find_one({"id": horari_id}, {"_id": 0})
        if not existing:
            raise HTTPException(status_code=404, detail="Horari no trobat")
        merged = {**existing, **update_data}
        check_slot_order(merged["hora_inici"], merged["hora_fi"])
    return await update_document("horaris", horari_id, update_data, "Horari no trobat")


@api_router.delete("/horaris/{horari_id}")
async def delete_horari(horari_id: int):
    return await delete_document("horaris", horari_id, "Horari no trobat")


# === Outings ===

@api_router.get("/sortides", response_model=List[SortidaRecord])
async def get_sortides(any_academic_id: Optional[int] = Query(default=None)):
    return await list_documents("sortides", build_query(any_academic_id=any_academic_id), sort=[("data_inici", -1)])


@api_router.post("/sortides", response_model=SortidaRecord)
async def create_sortida(payload: SortidaBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    record = await create_record("sortides", SortidaRecord, payload)
    await log_metric("crear_sortida", current_user, "sortida", record.id, any_academic_id=record.any_academic_id)
    return record


@api_router.put("/sortides/{sortida_id}", response_model=SortidaRecord)
async def update_sortida(sortida_id: int, payload: SortidaUpdate):
    return await update_document("sortides", sortida_id, changed_fields(payload), "Sortida no trobada")


@api_router.delete("/sortides/{sortida_id}")
async def delete_sortida(sortida_id: int):
    return await delete_document("sortides", sortida_id, "Sortida no trobada")


# === Guard duties ===

@api_router.get("/guardies", response_model=List[GuardiaRecord])
async def get_guardies(
    data: Optional[str] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(data=data, any_academic_id=any_academic_id)
    return await list_documents("guardies", query, sort=[("data", 1), ("hora_inici", 1)], limit=20000)


@api_router.post("/guardies", response_model=GuardiaRecord)
async def create_guardia(payload: GuardiaBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    record = await create_record("guardies", GuardiaRecord, payload)
    await log_metric(
        "crear_guardia",
        current_user,
        "guardia",
        record.id,
        {"data": record.data, "tipus_guardia": record.tipus_guardia},
        record.any_academic_id,
    )
    return record


@api_router.put("/guardies/{guardia_id}", response_model=GuardiaRecord)
async def update_guardia(guardia_id: int, payload: GuardiaUpdate):
    return await update_document("guardies", guardia_id, changed_fields(payload), "Guàrdia no trobada")


@api_router.delete("/guardies/{guardia_id}")
async def delete_guardia(guardia_id: int):
    await db.assignacions_guardia.delete_many({"guardia_id": guardia_id})
    return await delete_document("guardies", guardia_id, "Guàrdia no trobada")


# === Guard assignments ===

@api_router.get("/assignacions-guardia", response_model=List[AssignacioRecord])
async def get_assignacions_guardia(
    guardia_id: Optional[int] = Query(default=None),
    professor_id: Optional[int] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(guardia_id=guardia_id, professor_id=professor_id, any_academic_id=any_academic_id)
    return await list_documents("assignacions_guardia", query, sort=[("guardia_id", 1), ("prioritat", 1)], limit=20000)


@api_router.post("/assignacions-guardia", response_model=AssignacioRecord)
async def create_assignacio_guardia(payload: AssignacioBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    if not await db.guardies.find_one({"id": payload.guardia_id}):
        raise HTTPException(status_code=404, detail="Guàrdia no trobada")
    record = await create_record("assignacions_guardia", AssignacioRecord, payload)
    await log_metric(
        "crear_assignacio",
        current_user,
        "assignment",
        record.id,
        {"guardia_id": record.guardia_id, "professor_id": record.professor_id},
        record.any_academic_id,
    )
    return record


async def recent_guards_by_professor(today: date, window_days: int) -> Dict[int, List[Dict[str, Any]]]:
    cutoff = (today - timedelta(days=window_days)).isoformat()
    guards = await db.guardies.find({"data": {"$gte": cutoff}}, {"_id": 0}).to_list(20000)
    guards_by_id = {guard["id"]: guard for guard in guards}
    if not guards_by_id:
        return {}
    assignments = await db.assignacions_guardia.find(
        {"guardia_id": {"$in": list(guards_by_id)}}, {"_id": 0}
    ).to_list(50000)
    return guard_engine.recent_guards_by_professor(assignments, guards_by_id, today, window_days)


@api_router.post("/assignacions-guardia/auto-assign", response_model=AutoAssignResponse)
async def auto_assign_guard(payload: AutoAssignRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    guardia = await db.guardies.find_one({"id": payload.guardia_id}, {"_id": 0})
    if not guardia:
        raise HTTPException(status_code=404, detail="Guàrdia no trobada")
    year_query = build_query(any_academic_id=guardia.get("any_academic_id"))
    professors = await db.professors.find(year_query, PROFESSOR_PROJECTION).sort("id", 1).to_list(5000)
    horaris = await db.horaris.find(year_query, {"_id": 0}).to_list(20000)
    sortides = await db.sortides.find(year_query, {"_id": 0}).to_list(5000)
    current = await db.assignacions_guardia.find({"guardia_id": guardia["id"]}, {"_id": 0}).to_list(500)
    recent = await recent_guards_by_professor(date.today(), guard_engine.WORKLOAD_WINDOW_DAYS)

    ranked = guard_engine.rank_candidates(guardia, professors, sortides, horaris, current, recent)
    selected = guard_engine.select_candidates(guardia, ranked)
    logger.info("Auto-assign guard %s: %s candidate(s), %s selected", guardia["id"], len(ranked), len(selected))

    created = []
    for rank, candidate in enumerate(selected, start=1):
        assignment = AssignacioBase(
            any_academic_id=guardia.get("any_academic_id"),
            guardia_id=guardia["id"],
            professor_id=candidate.professor_id,
            prioritat=rank,
            motiu=candidate.reason,
            observacions=f"Assignació automàtica - {candidate.reason}",
        )
        record = await create_record("assignacions_guardia", AssignacioRecord, assignment)
        created.append(record)
        await log_metric(
            "guard_auto_assignment",
            current_user,
            "assignment",
            record.id,
            {
                "guardia_id": guardia["id"],
                "professor_id": candidate.professor_id,
                "tipus_guardia": guardia.get("tipus_guardia"),
                "auto_assigned": True,
            },
            record.any_academic_id,
        )

    if created:
        await db.guardies.update_one(
            {"id": guardia["id"]},
            {"$set": {"estat": "assignada", "professor_substitut_id": created[0].professor_id}},
        )
    return AutoAssignResponse(
        success=True,
        assignacions=created,
        message=f"Assignats {len(created)} professors automàticament",
    )


@api_router.put("/assignacions-guardia/{assignacio_id}", response_model=AssignacioRecord)
async def update_assignacio_guardia(assignacio_id: int, payload: AssignacioUpdate):
    return await update_document("assignacions_guardia", assignacio_id, changed_fields(payload), "Assignació no trobada")


@api_router.delete("/assignacions-guardia/{assignacio_id}")
async def delete_assignacio_guardia(assignacio_id: int):
    return await delete_document("assignacions_guardia", assignacio_id, "Assignació no trobada")


# === Tasks ===

@api_router.get("/tasques", response_model=List[TascaRecord])
async def get_tasques(
    assigna_id: Optional[int] = Query(default=None),
    pendent: Optional[bool] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(assigna_id=assigna_id, any_academic_id=any_academic_id)
    if pendent:
        query["estat"] = "pendent"
    return await list_documents("tasques", query, sort=[("data_creacio", -1)])


@api_router.post("/tasques", response_model=TascaRecord)
async def create_tasca(payload: TascaBase, current_user: Dict[str, Any] = Depends(get_current_user)):
    record = await create_record("tasques", TascaRecord, payload)
    await log_metric("crear_tasca", current_user, "tasca", record.id, any_academic_id=record.any_academic_id)
    return record


@api_router.put("/tasques/{tasca_id}", response_model=TascaRecord)
async def update_tasca(tasca_id: int, payload: TascaUpdate):
    return await update_document("tasques", tasca_id, changed_fields(payload), "Tasca no trobada")


@api_router.delete("/tasques/{tasca_id}")
async def delete_tasca(tasca_id: int):
    return await delete_document("tasques", tasca_id, "Tasca no trobada")


# === Communications ===

@api_router.get("/comunicacions", response_model=List[ComunicacioRecord])
async def get_comunicacions(
    destinatari_id: Optional[int] = Query(default=None),
    any_academic_id: Optional[int] = Query(default=None),
):
    query = build_query(destinatari_id=destinatari_id, any_academic_id=any_academic_id)
    return await list_documents("comunicacions", query, sort=[("data_enviament", -1)])


async def deliver_communication(record: ComunicacioRecord):
    if record.tipus_dest != "professor" or record.destinatari_id is None:
        return
    professor = await db.professors.find_one({"id": record.destinatari_id}, PROFESSOR_PROJECTION)
    if not professor or not professor.get("email"):
        logger.warning("Communication %s not emailed: recipient has no email", record.id)
        return
    try:
        sent = await asyncio.to_thread(
            send_communication_email, [professor["email"]], f"Comunicació: {record.tipus}", record.missatge
        )
    except Exception as exc:
        logger.error("Email for communication %s failed: %s", record.id, exc)
        return
    if sent and record.related_guardia_id is not None:
        await db.guardies.update_one({"id": record.related_guardia_id}, {"$set": {"comunicacio_enviada": True}})


@api_router.post("/comunicacions", response_model=ComunicacioRecord)
async def create_comunicacio(payload: ComunicacioCreate, current_user: Dict[str, Any] = Depends(get_current_user)):
    if payload.emissor_id is None:
        payload.emissor_id = current_user.get("id")
    record = await create_record("comunicacions", ComunicacioRecord, payload)
    if payload.enviar_email:
        await deliver_communication(record)
    return record


@api_router.put("/comunicacions/{comunicacio_id}/read", response_model=ComunicacioRecord)
async def mark_comunicacio_read(comunicacio_id: int):
    return await update_document("comunicacions", comunicacio_id, {"llegit": True}, "Comunicació no trobada")


@api_router.delete("/comunicacions/{comunicacio_id}")
async def delete_comunicacio(comunicacio_id: int):
    return await delete_document("comunicacions", comunicacio_id, "Comunicació no trobada")


# === Activity log and analytics ===

@api_router.get("/metrics", response_model=List[MetricRecord])
async def get_metrics(limit: int = Query(default=20, ge=1, le=500)):
    cursor = db.metrics.find({}, {"_id": 0}).sort([("timestamp", -1), ("id", -1)]).limit(limit)
    return await cursor.to_list(None)


@api_router.get("/analytics/workload-balance", response_model=List[WorkloadEntry])
async def get_workload_balance():
    today = date.today()
    professors = await db.professors.find({}, PROFESSOR_PROJECTION).sort("id", 1).to_list(5000)
    last_week = await recent_guards_by_professor(today, 7)
    last_month = await recent_guards_by_professor(today, guard_engine.WORKLOAD_WINDOW_DAYS)
    all_assignments = await db.assignacions_guardia.find({}, {"_id": 0, "professor_id": 1}).to_list(100000)
    totals = Counter(a.get("professor_id") for a in all_assignments)

    entries = [
        WorkloadEntry(
            professor_id=professor["id"],
            professor=f"{professor.get('nom', '')} {professor.get('cognoms', '')}".strip(),
            guard_count=len(last_week.get(professor["id"], [])),
            total_assignments=totals.get(professor["id"], 0),
            workload_score=guard_engine.workload_score(last_month.get(professor["id"], [])),
            departament=professor.get("departament"),
            carrec=professor.get("carrec"),
        )
        for professor in professors
    ]
    entries.sort(key=lambda entry: entry.workload_score, reverse=True)
    return entries


@api_router.get("/analytics/guard-stats", response_model=GuardStats)
async def get_guard_stats():
    guards = await db.guardies.find({}, {"_id": 0, "estat": 1, "tipus_guardia": 1}).to_list(100000)
    return GuardStats(
        total_guardies=len(guards),
        total_assignacions=await db.assignacions_guardia.count_documents({}),
        per_estat=dict(Counter(g.get("estat", "pendent") for g in guards)),
        per_tipus=dict(Counter(g.get("tipus_guardia", "") for g in guards)),
    )


# === Chat assistant ===

async def build_chat_context() -> Dict[str, Any]:
    today = date.today()
    week_start = today - timedelta(days=today.weekday())
    week_end = week_start + timedelta(days=7)
    return {
        "guardies_avui": await db.guardies.count_documents({"data": today.isoformat()}),
        "total_guardies": await db.guardies.count_documents({}),
        "professors": await db.professors.count_documents({}),
        "sortides_setmana": await db.sortides.count_documents(
            {"data_inici": {"$gte": week_start.isoformat(), "$lt": week_end.isoformat()}}
        ),
        "tasques_pendents": await db.tasques.count_documents({"estat": "pendent"}),
    }


@api_router.post("/chat/simple", response_model=ChatResponse)
async def chat_simple(payload: ChatRequest):
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="El missatge no pot estar buit")
    context = await build_chat_context()
    history = [turn.model_dump() for turn in payload.history]
    try:
        response = await asyncio.to_thread(assistant.generate_chat_response, message, history, context)
    except assistant.AssistantNotConfigured:
        raise HTTPException(status_code=503, detail="L'assistent no està configurat")
    return ChatResponse(response=response)


# === CSV import ===

@api_router.post("/import/alumnes", response_model=ImportResult)
async def import_alumnes_csv(
    file: UploadFile = File(...),
    any_academic_id: Optional[int] = Query(default=None),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if not file.filename:
        raise HTTPException(status_code=400, detail="No file provided")
    content = await file.read()
    year_id = await resolve_academic_year(any_academic_id)
    alumnes, skipped = parse_alumnes_csv(content, any_academic_id=year_id)

    async def insert(alumne: AlumneBase):
        await create_record("alumnes", AlumneRecord, alumne)

    result = await import_alumnes_async(alumnes, insert, skipped)
    logger.info("CSV import %s: %s inserted, %s skipped, %s failed", file.filename, result.inserted, result.skipped, result.failed)
    await log_metric("importar_alumnes", current_user, "alumne", None, result.model_dump(exclude={"failures"}), year_id)
    return result


# === Startup ===

def default_school_year_dates(today: date) -> tuple:
    start_year = today.year if today.month >= 9 else today.year - 1
    return date(start_year, 9, 1).isoformat(), date(start_year + 1, 6, 30).isoformat()


@app.on_event("startup")
async def seed_defaults():
    try:
        # Test MongoDB connection
        await client.admin.command('ping')
        logger.info("MongoDB connection successful")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        logger.error("Please check your MONGO_URL in .env file and ensure MongoDB is accessible")
        return  # Don't proceed if connection fails

    try:
        await db.professors.create_index([("id", 1)], unique=True)
        await db.professors.create_index([("email", 1)], unique=True)
        await db.anys_academics.create_index([("id", 1)], unique=True)
        await db.anys_academics.create_index(
            [("estat", 1)],
            unique=True,
            partialFilterExpression={"estat": "actiu"},
            name="one_active_year",
        )
        for collection in ["grups", "alumnes", "aules", "materies", "horaris", "sortides", "guardies",
                           "assignacions_guardia", "tasques", "comunicacions", "metrics"]:
            await db[collection].create_index([("id", 1)], unique=True)
        await db.guardies.create_index([("data", 1)])
        await db.assignacions_guardia.create_index([("guardia_id", 1)])
        await db.assignacions_guardia.create_index([("professor_id", 1)])
        await db.horaris.create_index([("professor_id", 1), ("dia_setmana", 1)])
        await db.metrics.create_index([("timestamp", -1)])

        active_year = await get_active_year()
        if not active_year and await db.anys_academics.count_documents({}) == 0:
            data_inici, data_fi = default_school_year_dates(date.today())
            active_year = AnyAcademicRecord(
                id=await next_id("anys_academics"),
                nom=config.DEFAULT_ACADEMIC_YEAR,
                data_inici=data_inici,
                data_fi=data_fi,
                estat="actiu",
            ).model_dump()
            await db.anys_academics.insert_one(dict(active_year))
            logger.info("Seeded academic year %s", config.DEFAULT_ACADEMIC_YEAR)

        if await db.professors.count_documents({}) == 0:
            admin = ProfessorRecord(
                id=await next_id("professors"),
                any_academic_id=active_year["id"] if active_year else None,
                nom="Administrador",
                cognoms="Escola",
                email=config.DEFAULT_ADMIN_EMAIL,
                rol="admin",
            )
            document = admin.model_dump()
            document["password_hash"] = get_password_hash(config.DEFAULT_ADMIN_PASSWORD)
            await db.professors.insert_one(document)
            logger.info("Seeded admin user %s", config.DEFAULT_ADMIN_EMAIL)
    except Exception as e:
        logger.error(f"Error during database seeding: {e}")
        logger.warning("Continuing without seeding defaults. Some features may not work correctly.")


app.include_router(auth_router)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.get_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1024)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
