"""
Acompanhamento das tarefas de um orçamento.

Cada linha (serviço, pacote ou avulsa) é uma tarefa que um mecânico alocado
marca como concluída. Só quem concluiu pode desmarcar.
"""
from sqlmodel import Session

from garage.errors import Forbidden, NotFound, ValidationError
from garage.logger import logger
from garage.models import ItemType, Quote, QuoteAdhocLine, QuotePackLine, QuoteServiceLine
from garage.pricing import load_quote_items
from garage.repository import atomic, bump_version, get_or_404, quote_mechanic_ids

LINE_MODELS = {
    ItemType.SERVICE: QuoteServiceLine,
    ItemType.PACK: QuotePackLine,
    ItemType.ADHOC: QuoteAdhocLine,
}


def resolve_item_type(item_type) -> ItemType:
    try:
        return ItemType(item_type)
    except ValueError:
        raise ValidationError(f"Tipo de item inválido: {item_type!r} (use service, pack ou adhoc)")


def toggle_task(session: Session, quote_id: int, task_id: int, mechanic_id: int, item_type):
    """Alterna `completed` da tarefa e grava/limpa `completed_by`."""
    line_model = LINE_MODELS[resolve_item_type(item_type)]
    quote = get_or_404(session, Quote, quote_id, "Orçamento")

    task = session.get(line_model, task_id)
    if not task or task.quote_id != quote.id:
        raise NotFound(f"Tarefa {task_id} não encontrada no orçamento {quote_id}")

    if mechanic_id not in quote_mechanic_ids(session, quote.id):
        raise Forbidden("O mecânico precisa estar alocado neste orçamento")

    if task.completed and task.completed_by is not None and task.completed_by != mechanic_id:
        raise Forbidden("Somente o mecânico que concluiu a tarefa pode desmarcá-la")

    with atomic(session):
        task.completed = not task.completed
        task.completed_by = mechanic_id if task.completed else None
        bump_version(session, quote)
        session.add(task)
    session.refresh(task)

    logger.info(
        f"Tarefa {item_type}:{task_id} do orçamento {quote_id} "
        f"{'concluída' if task.completed else 'reaberta'} pelo mecânico {mechanic_id}"
    )
    return task


def list_tasks(session: Session, quote_id: int) -> dict:
    get_or_404(session, Quote, quote_id, "Orçamento")
    items = load_quote_items(session, quote_id)
    return {
        "services": items["services"],
        "packs": items["packs"],
        "adhoc_lines": items["adhoc_lines"],
    }
