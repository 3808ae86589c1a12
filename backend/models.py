from datetime import date, datetime, time, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

HH_MM_PATTERN = r"^\d{2}:\d{2}$"
DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


def _check_calendar_date(value: str) -> str:
    date.fromisoformat(value)
    return value


def _check_clock_time(value: str) -> str:
    time.fromisoformat(value)
    return value


# Shape is checked by the pattern, existence (no 2025-02-30, no 25:99) by the validator.
SchoolDate = Annotated[str, Field(pattern=DATE_PATTERN), AfterValidator(_check_calendar_date)]
ClockTime = Annotated[str, Field(pattern=HH_MM_PATTERN), AfterValidator(_check_clock_time)]


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_school_datetime(value: Any, default_hour: int) -> Any:
    """Accept ISO strings or DD/MM/YYYY; day-only values get default_hour."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    parts = text.split("/")
    if len(parts) == 3:
        day, month, year = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}T{default_hour:02d}:00:00"
    if len(text) == 10 and text[4] == "-" and text[7] == "-":
        return f"{text}T{default_hour:02d}:00:00"
    return text


class RecordMixin(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    created_at: str = Field(default_factory=iso_now)


class YearScoped(BaseModel):
    any_academic_id: Optional[int] = None


# --- Auth ---

class AuthLogin(BaseModel):
    email: str
    password: str


class AuthUser(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: int
    email: str
    nom: str
    cognoms: str
    rol: str
    any_academic_id: Optional[int] = None


class LoginResponse(BaseModel):
    message: str = "Login correcte"
    token: str
    user: AuthUser
    expires_in: str = "7d"


class MessageResponse(BaseModel):
    message: str


# --- Academic years ---

AcademicYearState = Literal["actiu", "inactiu", "finalitzat"]


class AnyAcademicBase(BaseModel):
    nom: str
    data_inici: SchoolDate
    data_fi: SchoolDate
    estat: AcademicYearState = "actiu"
    observacions: Optional[str] = None


class AnyAcademicRecord(AnyAcademicBase, RecordMixin):
    pass


class AnyAcademicUpdate(BaseModel):
    nom: Optional[str] = None
    data_inici: Optional[SchoolDate] = None
    data_fi: Optional[SchoolDate] = None
    estat: Optional[AcademicYearState] = None
    observacions: Optional[str] = None


# --- Professors ---

class ProfessorBase(YearScoped):
    nom: str
    cognoms: str
    email: str
    codi_professor: Optional[str] = None
    rol: str = "professor"
    departament: Optional[str] = None
    carrec: Optional[str] = None


class ProfessorCreate(ProfessorBase):
    password: Optional[str] = None


class ProfessorRecord(ProfessorBase, RecordMixin):
    password_hash: Optional[str] = Field(default=None, exclude=True)


class ProfessorUpdate(BaseModel):
    nom: Optional[str] = None
    cognoms: Optional[str] = None
    email: Optional[str] = None
    codi_professor: Optional[str] = None
    rol: Optional[str] = None
    departament: Optional[str] = None
    carrec: Optional[str] = None
    password: Optional[str] = None


# --- Groups, students, classrooms, subjects ---

class GrupBase(YearScoped):
    nom_grup: str
    curs: Optional[str] = None
    nivell: Optional[str] = None


class GrupRecord(GrupBase, RecordMixin):
    pass


class GrupUpdate(BaseModel):
    nom_grup: Optional[str] = None
    curs: Optional[str] = None
    nivell: Optional[str] = None


class AlumneBase(YearScoped):
    nom: str
    cognoms: str
    email: Optional[str] = None
    telefon: Optional[str] = None
    grup_id: Optional[int] = None


class AlumneRecord(AlumneBase, RecordMixin):
    pass


class AlumneUpdate(BaseModel):
    nom: Optional[str] = None
    cognoms: Optional[str] = None
    email: Optional[str] = None
    telefon: Optional[str] = None
    grup_id: Optional[int] = None


class AulaBase(YearScoped):
    nom_aula: str
    capacitat: Optional[int] = None
    tipus: Optional[str] = None
    equipament: Optional[str] = None


class AulaRecord(AulaBase, RecordMixin):
    pass


class AulaUpdate(BaseModel):
    nom_aula: Optional[str] = None
    capacitat: Optional[int] = None
    tipus: Optional[str] = None
    equipament: Optional[str] = None


class MateriaBase(YearScoped):
    nom: str
    codi: str
    departament: Optional[str] = None
    hores_setmanals: int = 0
    tipus: str = "obligatoria"
    curs: Optional[str] = None
    descripcio: Optional[str] = None


class MateriaRecord(MateriaBase, RecordMixin):
    pass


class MateriaUpdate(BaseModel):
    nom: Optional[str] = None
    codi: Optional[str] = None
    departament: Optional[str] = None
    hores_setmanals: Optional[int] = None
    tipus: Optional[str] = None
    curs: Optional[str] = None
    descripcio: Optional[str] = None


# --- Schedules ---

class HorariBase(YearScoped):
    professor_id: Optional[int] = None
    grup_id: Optional[int] = None
    aula_id: Optional[int] = None
    materia_id: Optional[int] = None
    # Weekdays only: 1 = dilluns ... 5 = divendres
    dia_setmana: int = Field(ge=1, le=5)
    hora_inici: ClockTime
    hora_fi: ClockTime
    assignatura: Optional[str] = None


class HorariRecord(HorariBase, RecordMixin):
    pass


class HorariUpdate(BaseModel):
    professor_id: Optional[int] = None
    grup_id: Optional[int] = None
    aula_id: Optional[int] = None
    materia_id: Optional[int] = None
    dia_setmana: Optional[int] = Field(default=None, ge=1, le=5)
    hora_inici: Optional[ClockTime] = None
    hora_fi: Optional[ClockTime] = None
    assignatura: Optional[str] = None


# --- Outings ---

class SortidaBase(YearScoped):
    nom_sortida: str
    data_inici: str
    data_fi: str
    grup_id: Optional[int] = None
    descripcio: Optional[str] = None
    lloc: Optional[str] = None
    responsable_id: Optional[int] = None

    @field_validator("data_inici", mode="before")
    @classmethod
    def _normalize_start(cls, value):
        return parse_school_datetime(value, 8)

    @field_validator("data_fi", mode="before")
    @classmethod
    def _normalize_end(cls, value):
        return parse_school_datetime(value, 18)


class SortidaRecord(SortidaBase, RecordMixin):
    pass


class SortidaUpdate(BaseModel):
    nom_sortida: Optional[str] = None
    data_inici: Optional[str] = None
    data_fi: Optional[str] = None
    grup_id: Optional[int] = None
    descripcio: Optional[str] = None
    lloc: Optional[str] = None
    responsable_id: Optional[int] = None

    @field_validator("data_inici", mode="before")
    @classmethod
    def _normalize_start(cls, value):
        return parse_school_datetime(value, 8)

    @field_validator("data_fi", mode="before")
    @classmethod
    def _normalize_end(cls, value):
        return parse_school_datetime(value, 18)


# --- Guard duties and assignments ---

GuardState = Literal["pendent", "assignada", "completada"]
AssignmentState = Literal["assignada", "acceptada", "rebutjada", "completada"]


class GuardiaBase(YearScoped):
    sortida_id: Optional[int] = None
    horari_original_id: Optional[int] = None
    professor_original_id: Optional[int] = None
    professor_substitut_id: Optional[int] = None
    data: SchoolDate
    hora_inici: ClockTime
    hora_fi: ClockTime
    tipus_guardia: str
    estat: GuardState = "pendent"
    lloc: Optional[str] = None
    observacions: Optional[str] = None
    comunicacio_enviada: bool = False


class GuardiaRecord(GuardiaBase, RecordMixin):
    pass


class GuardiaUpdate(BaseModel):
    sortida_id: Optional[int] = None
    horari_original_id: Optional[int] = None
    professor_original_id: Optional[int] = None
    professor_substitut_id: Optional[int] = None
    data: Optional[SchoolDate] = None
    hora_inici: Optional[ClockTime] = None
    hora_fi: Optional[ClockTime] = None
    tipus_guardia: Optional[str] = None
    estat: Optional[GuardState] = None
    lloc: Optional[str] = None
    observacions: Optional[str] = None
    comunicacio_enviada: Optional[bool] = None


class AssignacioBase(YearScoped):
    guardia_id: int
    professor_id: int
    prioritat: int = Field(default=1, ge=1)
    estat: AssignmentState = "assignada"
    motiu: Optional[str] = None
    observacions: Optional[str] = None


class AssignacioRecord(AssignacioBase, RecordMixin):
    timestamp_asg: str = Field(default_factory=iso_now)


class AssignacioUpdate(BaseModel):
    professor_id: Optional[int] = None
    prioritat: Optional[int] = Field(default=None, ge=1)
    estat: Optional[AssignmentState] = None
    motiu: Optional[str] = None
    observacions: Optional[str] = None


class AutoAssignRequest(BaseModel):
    guardia_id: int


class AutoAssignResponse(BaseModel):
    success: bool = True
    assignacions: List[AssignacioRecord] = []
    message: str


# --- Tasks ---

TaskState = Literal["pendent", "en_progress", "completada", "cancel·lada"]
TaskPriority = Literal["baixa", "mitjana", "alta", "urgent"]


class TascaBase(YearScoped):
    assigna_id: Optional[int] = None
    sortida_id: Optional[int] = None
    descripcio: str
    estat: TaskState = "pendent"
    data_venciment: Optional[SchoolDate] = None
    prioritat: TaskPriority = "mitjana"
    comentaris: Optional[str] = None


class TascaRecord(TascaBase, RecordMixin):
    data_creacio: str = Field(default_factory=iso_now)


class TascaUpdate(BaseModel):
    assigna_id: Optional[int] = None
    sortida_id: Optional[int] = None
    descripcio: Optional[str] = None
    estat: Optional[TaskState] = None
    data_venciment: Optional[SchoolDate] = None
    prioritat: Optional[TaskPriority] = None
    comentaris: Optional[str] = None


# --- Communications ---

class ComunicacioBase(YearScoped):
    tipus_dest: Literal["professor", "grup", "administracio"]
    destinatari_id: Optional[int] = None
    missatge: str
    tipus: str = "notificacio"
    llegit: bool = False
    emissor_id: Optional[int] = None
    related_guardia_id: Optional[int] = None


class ComunicacioCreate(ComunicacioBase):
    enviar_email: bool = False


class ComunicacioRecord(ComunicacioBase, RecordMixin):
    data_enviament: str = Field(default_factory=iso_now)


# --- Activity log and analytics ---

class MetricRecord(RecordMixin):
    any_academic_id: Optional[int] = None
    accio: str
    usuari_id: Optional[int] = None
    detalls: Dict[str, Any] = {}
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    timestamp: str = Field(default_factory=iso_now)


class WorkloadEntry(BaseModel):
    professor_id: int
    professor: str
    guard_count: int
    total_assignments: int
    workload_score: int
    departament: Optional[str] = None
    carrec: Optional[str] = None


class GuardStats(BaseModel):
    total_guardies: int
    total_assignacions: int
    per_estat: Dict[str, int]
    per_tipus: Dict[str, int]


# --- Chat ---

class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str
    history: List[ChatTurn] = []


class ChatResponse(BaseModel):
    response: str


# --- CSV import ---

class ImportResult(BaseModel):
    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[str] = []
