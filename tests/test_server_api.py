from unittest.mock import MagicMock

from backend import assistant, server
from tests.conftest import insert, run


def test_create_uses_active_year_and_logs_metric(client, db, active_year, admin_headers):
    response = client.post("/api/grups", json={"nom_grup": "1r ESO A", "curs": "1r"}, headers=admin_headers)
    assert response.status_code == 200
    grup = response.json()
    assert grup["any_academic_id"] == active_year["id"]
    assert isinstance(grup["id"], int)

    metrics = client.get("/api/metrics", headers=admin_headers).json()
    assert metrics[0]["accio"] == "crear_grup"
    assert metrics[0]["entity_id"] == grup["id"]


def test_create_without_active_year_fails(client, admin_headers):
    response = client.post("/api/grups", json={"nom_grup": "1r ESO A"}, headers=admin_headers)
    assert response.status_code == 400


def test_update_and_delete_missing_return_404(client, active_year, admin_headers):
    assert client.put("/api/aules/999", json={"nom_aula": "X"}, headers=admin_headers).status_code == 404
    assert client.delete("/api/aules/999", headers=admin_headers).status_code == 404


def test_crud_round(client, active_year, admin_headers):
    created = client.post("/api/aules", json={"nom_aula": "A1", "capacitat": 30}, headers=admin_headers).json()
    updated = client.put(f"/api/aules/{created['id']}", json={"capacitat": 25}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()["capacitat"] == 25
    assert updated.json()["nom_aula"] == "A1"
    assert client.delete(f"/api/aules/{created['id']}", headers=admin_headers).json() == {"status": "deleted"}
    assert client.get("/api/aules", headers=admin_headers).json() == []


def test_professor_password_is_hashed_and_hidden(client, db, active_year, admin_headers):
    response = client.post(
        "/api/professors",
        json={"nom": "Joan", "cognoms": "Soler", "email": "joan@escola.cat", "password": "joan123"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert "password_hash" not in response.json()
    assert "password" not in response.json()

    stored = run(db.professors.find_one({"email": "joan@escola.cat"}))
    assert stored["password_hash"] != "joan123"
    assert server.verify_password("joan123", stored["password_hash"])

    listed = client.get("/api/professors", headers=admin_headers).json()
    assert all("password_hash" not in p for p in listed)

    login = client.post("/api/auth/login", json={"email": "joan@escola.cat", "password": "joan123"})
    assert login.status_code == 200


def test_professor_email_must_be_unique(client, active_year, admin, admin_headers):
    response = client.post(
        "/api/professors",
        json={"nom": "Altre", "cognoms": "Admin", "email": "Admin@Escola.cat"},
        headers=admin_headers,
    )
    assert response.status_code == 400


def test_single_active_year(client, db, admin_headers):
    first = client.post(
        "/api/anys-academics",
        json={"nom": "2024-25", "data_inici": "2024-09-01", "data_fi": "2025-06-30", "estat": "actiu"},
        headers=admin_headers,
    ).json()
    second = client.post(
        "/api/anys-academics",
        json={"nom": "2025-26", "data_inici": "2025-09-01", "data_fi": "2026-06-30", "estat": "actiu"},
        headers=admin_headers,
    ).json()

    active = client.get("/api/anys-academics/active", headers=admin_headers).json()
    assert active["id"] == second["id"]
    assert run(db.anys_academics.count_documents({"estat": "actiu"})) == 1

    client.put(f"/api/anys-academics/{first['id']}", json={"estat": "actiu"}, headers=admin_headers)
    years = {y["id"]: y["estat"] for y in client.get("/api/anys-academics", headers=admin_headers).json()}
    assert years == {first["id"]: "actiu", second["id"]: "inactiu"}


def test_no_active_year_returns_404(client, admin_headers):
    assert client.get("/api/anys-academics/active", headers=admin_headers).status_code == 404


def test_list_filters(client, active_year, admin_headers):
    client.post("/api/horaris", json={"professor_id": 1, "dia_setmana": 1, "hora_inici": "08:00", "hora_fi": "09:00"}, headers=admin_headers)
    client.post("/api/horaris", json={"professor_id": 1, "dia_setmana": 2, "hora_inici": "08:00", "hora_fi": "09:00"}, headers=admin_headers)
    client.post("/api/horaris", json={"professor_id": 2, "dia_setmana": 1, "hora_inici": "08:00", "hora_fi": "09:00"}, headers=admin_headers)

    rows = client.get("/api/horaris", params={"professor_id": 1, "dia_setmana": 1}, headers=admin_headers).json()
    assert len(rows) == 1
    assert len(client.get("/api/horaris", params={"professor_id": 1}, headers=admin_headers).json()) == 2


def test_horari_rejects_bad_values(client, active_year, admin_headers):
    bad_day = {"dia_setmana": 6, "hora_inici": "08:00", "hora_fi": "09:00"}
    assert client.post("/api/horaris", json=bad_day, headers=admin_headers).status_code == 422
    inverted = {"dia_setmana": 1, "hora_inici": "10:00", "hora_fi": "09:00"}
    assert client.post("/api/horaris", json=inverted, headers=admin_headers).status_code == 400


def test_sortida_day_only_dates_get_default_hours(client, active_year, admin_headers):
    response = client.post(
        "/api/sortides",
        json={"nom_sortida": "Museu", "data_inici": "10/03/2025", "data_fi": "2025-03-10"},
        headers=admin_headers,
    )
    body = response.json()
    assert body["data_inici"] == "2025-03-10T08:00:00"
    assert body["data_fi"] == "2025-03-10T18:00:00"


def test_tasques_pending_filter(client, active_year, admin_headers):
    client.post("/api/tasques", json={"descripcio": "Preparar", "assigna_id": 3}, headers=admin_headers)
    client.post("/api/tasques", json={"descripcio": "Fet", "assigna_id": 3, "estat": "completada"}, headers=admin_headers)
    pending = client.get("/api/tasques", params={"assigna_id": 3, "pendent": "true"}, headers=admin_headers).json()
    assert [t["descripcio"] for t in pending] == ["Preparar"]


def test_metrics_limit_newest_first(client, active_year, admin_headers):
    ids = [
        client.post("/api/grups", json={"nom_grup": name}, headers=admin_headers).json()["id"]
        for name in ("A", "B", "C")
    ]
    metrics = client.get("/api/metrics", params={"limit": 2}, headers=admin_headers).json()
    assert [m["entity_id"] for m in metrics] == [ids[2], ids[1]]


def test_communication_read_flag(client, active_year, professor, admin_headers):
    created = client.post(
        "/api/comunicacions",
        json={"tipus_dest": "professor", "destinatari_id": professor["id"], "missatge": "Hola"},
        headers=admin_headers,
    ).json()
    assert created["llegit"] is False
    read = client.put(f"/api/comunicacions/{created['id']}/read", headers=admin_headers)
    assert read.json()["llegit"] is True


def test_communication_email_without_sendgrid_is_still_stored(client, monkeypatch, active_year, professor, admin_headers):
    monkeypatch.delenv("SENDGRID_API_KEY", raising=False)
    response = client.post(
        "/api/comunicacions",
        json={"tipus_dest": "professor", "destinatari_id": professor["id"], "missatge": "Hola", "enviar_email": True},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert len(client.get("/api/comunicacions", headers=admin_headers).json()) == 1


def test_communication_email_sent_through_sendgrid(client, db, monkeypatch, active_year, professor, admin_headers):
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.test")
    monkeypatch.setenv("SENDER_EMAIL", "guardies@escola.cat")
    sendgrid = MagicMock()
    monkeypatch.setattr(server, "SendGridAPIClient", sendgrid)
    guard = insert(db, "guardies", data="2025-03-10", hora_inici="10:00", hora_fi="11:00",
                   tipus_guardia="Aula", estat="pendent", comunicacio_enviada=False,
                   any_academic_id=active_year["id"])

    client.post(
        "/api/comunicacions",
        json={
            "tipus_dest": "professor",
            "destinatari_id": professor["id"],
            "missatge": "Tens una guàrdia",
            "enviar_email": True,
            "related_guardia_id": guard["id"],
        },
        headers=admin_headers,
    )
    sendgrid.assert_called_once_with("SG.test")
    sendgrid.return_value.send.assert_called_once()
    assert run(db.guardies.find_one({"id": guard["id"]}))["comunicacio_enviada"] is True


def test_delete_guard_removes_its_assignments(client, db, active_year, admin_headers):
    guard = client.post(
        "/api/guardies",
        json={"data": "2025-03-10", "hora_inici": "10:00", "hora_fi": "11:00", "tipus_guardia": "Aula"},
        headers=admin_headers,
    ).json()
    client.post("/api/assignacions-guardia", json={"guardia_id": guard["id"], "professor_id": 7}, headers=admin_headers)
    client.delete(f"/api/guardies/{guard['id']}", headers=admin_headers)
    assert run(db.assignacions_guardia.count_documents({})) == 0


def test_assignment_for_unknown_guard_is_404(client, active_year, admin_headers):
    response = client.post("/api/assignacions-guardia", json={"guardia_id": 42, "professor_id": 1}, headers=admin_headers)
    assert response.status_code == 404


# --- auto-assignment ---

def _professor(db, year, nom, **extra):
    return insert(db, "professors", nom=nom, cognoms="Test", email=f"{nom.lower()}@escola.cat",
                  rol="professor", any_academic_id=year["id"], **extra)


def _guard(db, year, **extra):
    fields = dict(data="2025-03-10", hora_inici="10:00", hora_fi="11:00", tipus_guardia="Aula",
                  estat="pendent", comunicacio_enviada=False, any_academic_id=year["id"])
    fields.update(extra)
    return insert(db, "guardies", **fields)


def test_auto_assign_prefers_scheduled_duty(client, db, active_year, admin_headers):
    absent = _professor(db, active_year, "Absent")
    on_duty = _professor(db, active_year, "Duty")
    _professor(db, active_year, "Plain")
    insert(db, "horaris", professor_id=on_duty["id"], dia_setmana=1, hora_inici="10:00",
           hora_fi="11:00", assignatura="Guardia", any_academic_id=active_year["id"])
    guard = _guard(db, active_year, professor_original_id=absent["id"])

    response = client.post("/api/assignacions-guardia/auto-assign", json={"guardia_id": guard["id"]}, headers=admin_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [a["professor_id"] for a in body["assignacions"]] == [on_duty["id"]]
    assert body["assignacions"][0]["prioritat"] == 1

    stored = run(db.guardies.find_one({"id": guard["id"]}))
    assert stored["estat"] == "assignada"
    assert stored["professor_substitut_id"] == on_duty["id"]
    assert run(db.metrics.count_documents({"accio": "guard_auto_assignment"})) == 1


def test_auto_assign_patio_takes_two_and_outing_first(client, db, active_year, admin_headers):
    freed = _professor(db, active_year, "Freed")
    duty = _professor(db, active_year, "Duty")
    _professor(db, active_year, "Plain")
    insert(db, "horaris", professor_id=freed["id"], grup_id=5, dia_setmana=1, hora_inici="10:00",
           hora_fi="11:00", assignatura="Mates", any_academic_id=active_year["id"])
    insert(db, "horaris", professor_id=duty["id"], dia_setmana=1, hora_inici="10:00",
           hora_fi="11:00", assignatura="GUARDIA", any_academic_id=active_year["id"])
    insert(db, "sortides", nom_sortida="Museu", grup_id=5, data_inici="2025-03-10T08:00:00",
           data_fi="2025-03-10T18:00:00", any_academic_id=active_year["id"])
    guard = _guard(db, active_year, tipus_guardia="Pati")

    body = client.post("/api/assignacions-guardia/auto-assign", json={"guardia_id": guard["id"]}, headers=admin_headers).json()
    assert [a["professor_id"] for a in body["assignacions"]] == [freed["id"], duty["id"]]
    assert body["assignacions"][0]["motiu"] == "Alliberat per sortida: Museu"


def test_auto_assign_without_candidates(client, db, active_year, admin_headers):
    guard = _guard(db, active_year)
    body = client.post("/api/assignacions-guardia/auto-assign", json={"guardia_id": guard["id"]}, headers=admin_headers).json()
    assert body["assignacions"] == []
    assert run(db.guardies.find_one({"id": guard["id"]}))["estat"] == "pendent"


def test_auto_assign_unknown_guard(client, active_year, admin_headers):
    response = client.post("/api/assignacions-guardia/auto-assign", json={"guardia_id": 404}, headers=admin_headers)
    assert response.status_code == 404


# --- analytics ---

def test_workload_balance_counts_recent_guards(client, db, active_year, professor, admin_headers):
    today = server.date.today().isoformat()
    guard = _guard(db, active_year, data=today, tipus_guardia="Pati")
    insert(db, "assignacions_guardia", guardia_id=guard["id"], professor_id=professor["id"], prioritat=1, estat="assignada")

    entries = {e["professor_id"]: e for e in client.get("/api/analytics/workload-balance", headers=admin_headers).json()}
    assert entries[professor["id"]]["guard_count"] == 1
    assert entries[professor["id"]]["total_assignments"] == 1
    assert entries[professor["id"]]["workload_score"] == 15
    assert entries[professor["id"]]["professor"] == "Marta Puig"


def test_guard_stats(client, db, active_year, admin_headers):
    _guard(db, active_year)
    _guard(db, active_year, estat="assignada", tipus_guardia="Pati")
    stats = client.get("/api/analytics/guard-stats", headers=admin_headers).json()
    assert stats["total_guardies"] == 2
    assert stats["per_estat"] == {"pendent": 1, "assignada": 1}
    assert stats["per_tipus"] == {"Aula": 1, "Pati": 1}
    assert stats["total_assignacions"] == 0


# --- chat ---

def test_chat_blank_message(client, admin_headers):
    assert client.post("/api/chat/simple", json={"message": "  "}, headers=admin_headers).status_code == 400


def test_chat_without_api_key(client, monkeypatch, admin_headers):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(assistant, "_client", None)
    assert client.post("/api/chat/simple", json={"message": "Hola"}, headers=admin_headers).status_code == 503


def test_chat_forwards_context(client, monkeypatch, admin_headers):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(assistant, "_client", None)
    openai_cls = MagicMock()
    completion = openai_cls.return_value.chat.completions.create
    completion.return_value.choices = [MagicMock()]
    completion.return_value.choices[0].message.content = "Avui no hi ha guàrdies."
    monkeypatch.setattr(assistant, "OpenAI", openai_cls)

    response = client.post(
        "/api/chat/simple",
        json={"message": "Quantes guàrdies hi ha?", "history": [{"role": "user", "content": "Hola"}]},
        headers=admin_headers,
    )
    assert response.json() == {"response": "Avui no hi ha guàrdies."}
    messages = completion.call_args.kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert "Professors registrats: 1" in messages[0]["content"]
    assert messages[-1] == {"role": "user", "content": "Quantes guàrdies hi ha?"}


# --- CSV upload ---

CSV = (
    "nom,cognoms,email,telefon,grup\n"
    '"Smith, Jr.",John,j@x.com,555,2\n'
    "Anna,Vidal,,,1\n"
    "Pere,Roca,p@x.com,600,9\n"
)


def test_csv_upload_imports_and_duplicates_on_rerun(client, db, active_year, admin_headers):
    files = {"file": ("alumnes.csv", CSV.encode("utf-8"), "text/csv")}
    first = client.post("/api/import/alumnes", files=files, headers=admin_headers).json()
    assert (first["inserted"], first["skipped"], first["failed"]) == (2, 1, 0)

    files = {"file": ("alumnes.csv", CSV.encode("utf-8"), "text/csv")}
    client.post("/api/import/alumnes", files=files, headers=admin_headers)
    alumnes = client.get("/api/alumnes", params={"grup_id": 38}, headers=admin_headers).json()
    assert len(alumnes) == 2
    assert alumnes[0]["nom"] == "Smith, Jr."
    assert alumnes[0]["any_academic_id"] == active_year["id"]


# --- validation ---

def test_impossible_guard_date_or_time_is_rejected(client, active_year, admin_headers):
    base = {"data": "2025-03-10", "hora_inici": "10:00", "hora_fi": "11:00", "tipus_guardia": "Aula"}
    assert client.post("/api/guardies", json=dict(base, data="2025-02-30"), headers=admin_headers).status_code == 422
    assert client.post("/api/guardies", json=dict(base, hora_fi="25:99"), headers=admin_headers).status_code == 422
    assert client.post("/api/guardies", json=base, headers=admin_headers).status_code == 200


def test_impossible_dates_rejected_on_update(client, active_year, admin_headers):
    guard = client.post(
        "/api/guardies",
        json={"data": "2025-03-10", "hora_inici": "10:00", "hora_fi": "11:00", "tipus_guardia": "Aula"},
        headers=admin_headers,
    ).json()
    response = client.put(f"/api/guardies/{guard['id']}", json={"data": "2025-13-01"}, headers=admin_headers)
    assert response.status_code == 422
    response = client.put(
        f"/api/anys-academics/{active_year['id']}", json={"data_fi": "2025-06-31"}, headers=admin_headers
    )
    assert response.status_code == 422


def test_horari_update_keeps_end_after_start(client, active_year, admin_headers):
    horari = client.post(
        "/api/horaris", json={"dia_setmana": 1, "hora_inici": "08:00", "hora_fi": "09:00"}, headers=admin_headers
    ).json()
    response = client.put(f"/api/horaris/{horari['id']}", json={"hora_fi": "07:30"}, headers=admin_headers)
    assert response.status_code == 400
    response = client.put(f"/api/horaris/{horari['id']}", json={"hora_fi": "09:30"}, headers=admin_headers)
    assert response.json()["hora_fi"] == "09:30"
    assert client.put("/api/horaris/999", json={"hora_fi": "09:30"}, headers=admin_headers).status_code == 404


def test_email_body_is_html_escaped(monkeypatch):
    monkeypatch.setenv("SENDGRID_API_KEY", "SG.test")
    mail = MagicMock()
    monkeypatch.setattr(server, "Mail", mail)
    monkeypatch.setattr(server, "SendGridAPIClient", MagicMock())

    assert server.send_communication_email(["a@b.cat"], "Avís", "<script>x</script> & co")
    assert mail.call_args.kwargs["html_content"] == "<p>&lt;script&gt;x&lt;/script&gt; &amp; co</p>"
