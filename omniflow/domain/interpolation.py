"""
Variable Interpolation

``{{name}}`` placeholders (word characters only). Unknown names are left in
the text verbatim.
"""
import re
from datetime import datetime
from typing import Any, Mapping, Optional

from omniflow.db.database import utcnow

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")

AVAILABLE_VARIABLES = {
    "contact": {
        "nome": "Nome do contato",
        "email": "E-mail do contato",
        "telefone": "Telefone do contato",
        "empresa": "Empresa do contato",
    },
    "agent": {
        "agente_nome": "Nome do agente",
        "agente_email": "E-mail do agente",
    },
    "system": {
        "data": "Data atual (DD/MM/YYYY)",
        "hora": "Hora atual (HH:mm)",
        "dia_semana": "Dia da semana",
    },
}

# datetime.weekday(): Monday == 0
WEEKDAY_NAMES = (
    "Segunda-feira",
    "Terça-feira",
    "Quarta-feira",
    "Quinta-feira",
    "Sexta-feira",
    "Sábado",
    "Domingo",
)


def interpolate_template(text: Optional[str], variables: Mapping[str, Any]) -> str:
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def extract_variables(text: Optional[str]) -> list[str]:
    """Unique placeholder names in first-seen order"""
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(text or "")))


def unknown_variables(text: Optional[str]) -> list[str]:
    """Placeholders that are not contact/agent/system variables"""
    known = {name for group in AVAILABLE_VARIABLES.values() for name in group}
    return [name for name in extract_variables(text) if name not in known]


def build_interpolation_context(
    contact: Any = None,
    agent: Any = None,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    """
    Contact, agent and system variables for templates.

    ``contact``/``agent`` may be ORM rows or plain dicts; missing attributes
    become empty strings.
    """
    now = now or utcnow()

    def _get(source: Any, attr: str) -> str:
        if source is None:
            return ""
        if isinstance(source, Mapping):
            value = source.get(attr)
        else:
            value = getattr(source, attr, None)
        return str(value) if value else ""

    return {
        "nome": _get(contact, "name"),
        "email": _get(contact, "email"),
        "telefone": _get(contact, "phone"),
        "empresa": _get(contact, "company"),
        "agente_nome": _get(agent, "name"),
        "agente_email": _get(agent, "email"),
        "data": now.strftime("%d/%m/%Y"),
        "hora": now.strftime("%H:%M"),
        "dia_semana": WEEKDAY_NAMES[now.weekday()],
    }
