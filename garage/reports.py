"""Mensagem ao cliente escrita pela IA (Gemini) a partir de uma reparação."""
import html
import urllib.parse

import google.generativeai as genai
from sqlmodel import Session

from garage import config
from garage.logger import logger
from garage.models import RepairOrder, User, Vehicle
from garage.repairs import repair_lines

if not config.GOOGLE_API_KEY:
    logger.warning("GOOGLE_API_KEY não encontrada no arquivo .env; relatórios com IA vão falhar")

genai.configure(api_key=config.GOOGLE_API_KEY)
model = genai.GenerativeModel(config.GEMINI_MODEL)


def build_prompt(client: User, vehicle: Vehicle, repair: RepairOrder, lines) -> str:
    items_list_str = "".join(
        f"- {line.designation} (x{line.quantity:g})\n" for line in lines
    )
    total = repair.final_cost if repair.final_cost is not None else repair.estimated_cost
    return f"""
    Atue como um mecânico chefe honesto e profissional.
    Escreva uma mensagem curta para WhatsApp para o cliente {client.full_name} (Carro: {vehicle.make} {vehicle.model}).

    LISTA REAL DE PEÇAS/SERVIÇOS REALIZADOS (USE APENAS ESTES):
    {items_list_str}

    Valor Total: {total:.2f}

    Instruções RÍGIDAS:
    1. Cite APENAS os itens listados acima. NÃO INVENTE NENHUM OUTRO SERVIÇO.
    2. Se a lista for pequena, seja breve.
    3. Explique a importância técnica do que foi feito.
    4. Seja cordial. Sem markdown.
    """


def generate_client_message(session: Session, repair: RepairOrder) -> str:
    """Retorna um trecho HTML; erros da IA viram um aviso, nunca uma exceção."""
    client = session.get(User, repair.client_id)
    vehicle = session.get(Vehicle, repair.vehicle_id)
    lines = repair_lines(session, repair.id)

    if not lines:
        return """
        <div class="alert alert-warning">
            Adicione serviços à reparação antes de gerar o relatório.
        </div>
        """

    prompt = build_prompt(client, vehicle, repair, lines)
    repair_id, phone = repair.id, client.phone
    # Encerra a leitura: o lock do SQLite não pode ficar preso durante a chamada à IA
    session.rollback()
    try:
        response = model.generate_content(prompt)
        message = response.text
    except Exception as e:
        logger.exception(f"Falha ao gerar relatório da reparação {repair_id}")
        return f"<div class='alert alert-danger'>Erro IA: {html.escape(str(e))}</div>"

    link = ""
    if phone:
        whatsapp_link = f"https://wa.me/{phone.replace(' ', '')}?text={urllib.parse.quote(message)}"
        link = f'<a href="{whatsapp_link}" target="_blank" class="btn btn-success fw-bold">Enviar</a>'
    logger.info(f"Relatório da reparação {repair_id} gerado")
    return f"""
    <div class="bg-success-subtle border border-success p-3 rounded text-success-emphasis">
        <h5 class="fw-bold">Relatório Pronto:</h5>
        <p style="white-space: pre-line;">{html.escape(message)}</p>
        {link}
    </div>"""
