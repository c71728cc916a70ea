import os
from datetime import date, datetime
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from sqlmodel import Session

from garage import availability, catalog, invoices, notifications, quotes, repairs, reports, stats, tasks
from garage.database import create_db_and_tables, get_session
from garage.errors import GarageError
from garage.logger import logger
from garage.models import InvoiceStatus, QuoteStatus, RepairStatus, Role, User, Vehicle
from garage.permissions import Action, Actor, Resource, require
from garage import schemas

app = FastAPI(title="Garage Manager")
templates = Jinja2Templates(directory=os.path.join(os.path.dirname(__file__), "templates"))


@app.on_event("startup")
def on_startup():
    create_db_and_tables()


@app.exception_handler(GarageError)
async def garage_error_handler(request: Request, exc: GarageError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.code, "message": exc.message},
    )


# --- Identidade (a autenticação fica fora da aplicação) ---

def get_optional_actor(
    x_user_id: Annotated[Optional[int], Header()] = None,
    session: Session = Depends(get_session),
) -> Optional[Actor]:
    if x_user_id is None:
        return None
    user = session.get(User, x_user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Usuário desconhecido ou inativo")
    actor = Actor(user_id=user.id, role=user.role)
    # Libera o lock de leitura antes da rota
    session.rollback()
    return actor


def get_current_actor(actor: Optional[Actor] = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="Cabeçalho X-User-Id obrigatório")
    return actor


SessionDep = Annotated[Session, Depends(get_session)]
ActorDep = Annotated[Actor, Depends(get_current_actor)]


# --- Usuários e catálogo ---

@app.post("/users", status_code=201)
def create_user(payload: schemas.UserCreate, session: SessionDep,
                actor: Optional[Actor] = Depends(get_optional_actor)):
    # Clientes se cadastram sozinhos; equipe só é criada por um gerente
    if payload.role != Role.CLIENT:
        if actor is None:
            raise HTTPException(status_code=401, detail="Cabeçalho X-User-Id obrigatório")
        require(actor, Action.CATALOG_MANAGE, message="Somente um gerente pode cadastrar a equipe")
    return catalog.create_user(session, **payload.model_dump())


@app.get("/users")
def read_users(session: SessionDep, actor: ActorDep, role: Optional[Role] = None, active_only: bool = False):
    require(actor, Action.CATALOG_MANAGE)
    return catalog.list_users(session, role, active_only)


@app.post("/users/{user_id}/deactivate")
def deactivate_user(user_id: int, session: SessionDep, actor: ActorDep):
    return catalog.deactivate_user(session, actor, user_id)


@app.post("/vehicles", status_code=201)
def create_vehicle(payload: schemas.VehicleCreate, session: SessionDep, actor: ActorDep):
    return catalog.create_vehicle(session, actor, **payload.model_dump())


@app.get("/clients/{client_id}/vehicles")
def read_vehicles(client_id: int, session: SessionDep, actor: ActorDep):
    require(actor, Action.QUOTE_VIEW, Resource(owner_id=client_id))
    return catalog.list_vehicles(session, client_id)


@app.post("/services", status_code=201)
def create_service(payload: schemas.ServiceCreate, session: SessionDep, actor: ActorDep):
    return catalog.create_service(session, actor, **payload.model_dump())


@app.get("/services")
def read_services(session: SessionDep, search: str = ""):
    return catalog.list_services(session, search)


@app.post("/packs", status_code=201)
def create_pack(payload: schemas.PackCreate, session: SessionDep, actor: ActorDep):
    return catalog.create_pack(session, actor, **payload.model_dump())


@app.get("/packs")
def read_packs(session: SessionDep):
    return [
        {**pack.model_dump(), "services": catalog.pack_services(session, pack.id)}
        for pack in catalog.list_packs(session)
    ]


# --- Orçamentos ---

@app.post("/quotes", status_code=201)
def create_quote(payload: schemas.QuoteCreate, session: SessionDep, actor: ActorDep):
    return quotes.create_quote(session, actor, payload.client_id, payload.vehicle_id, payload.problem)


@app.get("/quotes")
def read_quotes(
    session: SessionDep,
    actor: ActorDep,
    status: Optional[QuoteStatus] = None,
    client_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    if actor.role == Role.MECHANIC:
        return quotes.list_quotes_for_mechanic(session, actor.user_id, status, page, limit)
    if actor.role == Role.CLIENT:
        client_id = actor.user_id
    return quotes.list_quotes(session, status, client_id, date_from, date_to, search, page, limit)


@app.get("/quotes/{quote_id}")
def read_quote(quote_id: int, session: SessionDep, actor: ActorDep):
    return quotes.quote_detail(session, quotes.get_quote(session, actor, quote_id))


@app.post("/quotes/{quote_id}/services")
def add_service_line(quote_id: int, payload: schemas.ServiceLineIn, session: SessionDep, actor: ActorDep):
    return quotes.add_service_line(session, actor, quote_id, **payload.model_dump())


@app.post("/quotes/{quote_id}/packs")
def add_pack_line(quote_id: int, payload: schemas.PackLineIn, session: SessionDep, actor: ActorDep):
    return quotes.add_pack_line(session, actor, quote_id, **payload.model_dump())


@app.post("/quotes/{quote_id}/adhoc-lines")
def add_adhoc_line(quote_id: int, payload: schemas.AdhocLineIn, session: SessionDep, actor: ActorDep):
    return quotes.add_adhoc_line(session, actor, quote_id, payload.model_dump())


@app.post("/quotes/{quote_id}/mechanics")
def assign_mechanics(quote_id: int, payload: schemas.AssignMechanics, session: SessionDep, actor: ActorDep):
    return quotes.assign_mechanics(
        session, actor, quote_id, payload.mechanic_ids, payload.hours_per_mechanic, payload.start_dates,
    )


def _dump_list(items):
    return [item.model_dump() for item in items] if items is not None else None


@app.post("/quotes/{quote_id}/finalize")
def finalize_quote(quote_id: int, payload: schemas.FinalizeQuote, session: SessionDep, actor: ActorDep):
    quote = quotes.finalize_quote(
        session, actor, quote_id,
        services=_dump_list(payload.services),
        packs=_dump_list(payload.packs),
        adhoc_lines=_dump_list(payload.adhoc_lines),
        mechanics=_dump_list(payload.mechanics),
        intervention_date=payload.intervention_date,
    )
    return quotes.quote_detail(session, quote)


@app.post("/quotes/{quote_id}/accept")
def accept_quote(quote_id: int, session: SessionDep, actor: ActorDep):
    repair = quotes.accept_quote(session, actor, quote_id)
    return {"success": True, "repair": repair}


@app.post("/quotes/{quote_id}/refuse")
def refuse_quote(quote_id: int, session: SessionDep, actor: ActorDep):
    return quotes.refuse_quote(session, actor, quote_id)


@app.get("/quotes/{quote_id}/tasks")
def read_tasks(quote_id: int, session: SessionDep, actor: ActorDep):
    quotes.get_quote(session, actor, quote_id)
    return tasks.list_tasks(session, quote_id)


@app.post("/quotes/{quote_id}/tasks/{task_id}/toggle")
def toggle_task(quote_id: int, task_id: int, payload: schemas.TaskToggle, session: SessionDep, actor: ActorDep):
    return tasks.toggle_task(session, quote_id, task_id, actor.user_id, payload.item_type)


@app.get("/quotes/{quote_id}/chat")
def read_chat(quote_id: int, session: SessionDep, actor: ActorDep):
    return quotes.get_chat_messages(session, actor, quote_id)


@app.post("/quotes/{quote_id}/chat", status_code=201)
def post_chat(quote_id: int, payload: schemas.ChatMessageIn, session: SessionDep, actor: ActorDep):
    return quotes.post_chat_message(session, actor, quote_id, payload.message)


# --- Disponibilidade ---

@app.get("/availability/unavailable-dates")
def read_unavailable_dates(session: SessionDep):
    return {"dates": availability.iso_dates(availability.get_unavailable_dates(session))}


@app.get("/availability/mechanics")
def read_available_mechanics(session: SessionDep, actor: ActorDep, day: date = Query(alias="date")):
    return [
        {"id": mechanic.id, "full_name": mechanic.full_name}
        for mechanic in availability.get_available_mechanics(session, day)
    ]


# --- Reparações ---

@app.get("/repairs")
def read_repairs(session: SessionDep, actor: ActorDep, status: Optional[RepairStatus] = None,
                 page: int = 1, limit: int = 10):
    if actor.role == Role.CLIENT:
        return repairs.list_repairs(session, status, client_id=actor.user_id, page=page, limit=limit)
    if actor.role == Role.MECHANIC:
        return repairs.list_repairs(session, status, mechanic_id=actor.user_id, page=page, limit=limit)
    return repairs.list_repairs(session, status, page=page, limit=limit)


@app.get("/repairs/{repair_id}")
def read_repair(repair_id: int, session: SessionDep, actor: ActorDep):
    return repairs.repair_detail(session, repairs.get_repair(session, actor, repair_id))


@app.patch("/repairs/{repair_id}/status")
def update_repair_status(repair_id: int, payload: schemas.RepairStatusIn, session: SessionDep, actor: ActorDep):
    return repairs.update_repair_status(session, actor, repair_id, payload.status)


@app.post("/repairs/{repair_id}/steps", status_code=201)
def add_step(repair_id: int, payload: schemas.StepIn, session: SessionDep, actor: ActorDep):
    return repairs.add_step(session, actor, repair_id, payload.title, payload.description)


@app.patch("/repairs/{repair_id}/steps/{step_id}")
def update_step(repair_id: int, step_id: int, payload: schemas.StepStatusIn, session: SessionDep, actor: ActorDep):
    return repairs.update_step_status(session, actor, repair_id, step_id, payload.status, payload.finished_at)


@app.post("/repairs/{repair_id}/steps/{step_id}/comments", status_code=201)
def add_step_comment(repair_id: int, step_id: int, payload: schemas.CommentIn, session: SessionDep, actor: ActorDep):
    return repairs.add_step_comment(session, actor, repair_id, step_id, payload.message)


@app.post("/repairs/{repair_id}/photos", status_code=201)
def add_photo(repair_id: int, payload: schemas.PhotoIn, session: SessionDep, actor: ActorDep):
    return repairs.add_photo(session, actor, repair_id, payload.url, payload.description, payload.step_id)


@app.post("/repairs/{repair_id}/notes", status_code=201)
def add_note(repair_id: int, payload: schemas.CommentIn, session: SessionDep, actor: ActorDep):
    return repairs.add_internal_note(session, actor, repair_id, payload.message)


@app.post("/repairs/{repair_id}/generate_report", response_class=HTMLResponse)
def generate_report(repair_id: int, session: SessionDep, actor: ActorDep):
    repair = repairs.get_repair(session, actor, repair_id)
    require(actor, Action.REPAIR_UPDATE, repairs.repair_resource(session, repair))
    return HTMLResponse(reports.generate_client_message(session, repair))


# --- Faturas ---

@app.post("/invoices", status_code=201)
def create_invoice(payload: schemas.InvoiceCreate, session: SessionDep, actor: ActorDep):
    invoice = invoices.create_invoice_from_repair(
        session, payload.repair_id, actor,
        discount=payload.discount.model_dump() if payload.discount else None,
        payment_terms_days=payload.payment_terms_days,
        comments=payload.comments,
    )
    return invoices.invoice_detail(session, invoice)


@app.get("/invoices")
def read_invoices(session: SessionDep, actor: ActorDep, status: Optional[InvoiceStatus] = None,
                  page: int = 1, limit: int = 10):
    if actor.role == Role.CLIENT:
        return invoices.list_invoices(session, status, actor.user_id, page, limit)
    require(actor, Action.INVOICE_MANAGE)
    return invoices.list_invoices(session, status, None, page, limit)


@app.post("/invoices/refresh-overdue")
def refresh_overdue(session: SessionDep, actor: ActorDep):
    require(actor, Action.INVOICE_MANAGE)
    return {"updated": invoices.refresh_overdue(session)}


@app.get("/invoices/{invoice_id}")
def read_invoice(invoice_id: int, session: SessionDep, actor: ActorDep):
    return invoices.invoice_detail(session, invoices.get_invoice(session, actor, invoice_id))


@app.post("/invoices/{invoice_id}/payments", status_code=201)
def add_payment(invoice_id: int, payload: schemas.PaymentIn, session: SessionDep, actor: ActorDep):
    invoice = invoices.add_payment(session, actor, invoice_id, **payload.model_dump())
    return invoices.invoice_detail(session, invoice)


@app.post("/invoices/{invoice_id}/issue")
def issue_invoice(invoice_id: int, session: SessionDep, actor: ActorDep):
    return invoices.issue_invoice(session, actor, invoice_id)


@app.post("/invoices/{invoice_id}/cancel")
def cancel_invoice(invoice_id: int, session: SessionDep, actor: ActorDep):
    return invoices.cancel_invoice(session, actor, invoice_id)


@app.get("/invoices/{invoice_id}/print", response_class=HTMLResponse)
def print_invoice(invoice_id: int, request: Request, session: SessionDep, actor: ActorDep):
    """Rota simplificada apenas para impressão"""
    invoice = invoices.get_invoice(session, actor, invoice_id)
    return templates.TemplateResponse(request, "print_invoice.html", {
        "invoice": invoice,
        "client": session.get(User, invoice.client_id),
        "vehicle": session.get(Vehicle, invoice.vehicle_id),
        "lines": invoices.invoice_lines(session, invoice.id),
        "amount_paid": invoices.amount_paid(session, invoice.id),
        "now": datetime.now(),
    })


# --- Notificações e painel ---

@app.get("/notifications")
def read_notifications(session: SessionDep, actor: ActorDep, unread_only: bool = False):
    return notifications.list_notifications(session, actor.user_id, actor.role, unread_only)


@app.post("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: int, session: SessionDep, actor: ActorDep):
    return notifications.mark_read(session, notification_id, actor.user_id, actor.role)


@app.get("/stats/dashboard")
def read_dashboard(session: SessionDep, actor: ActorDep, date_from: Optional[date] = None,
                   date_to: Optional[date] = None):
    require(actor, Action.STATS_VIEW)
    return stats.dashboard(session, date_from, date_to)
