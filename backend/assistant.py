"""
Thin chat assistant over the OpenAI chat completions API.

The server gathers a small snapshot of the school data and this module turns
it into a system prompt; the model does the rest.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from openai import OpenAI

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
FALLBACK_RESPONSE = "Hi ha hagut un error en processar la teva consulta. Si us plau, torna-ho a intentar."
EMPTY_RESPONSE = "Ho sento, no he pogut processar la teva consulta."

_client: Optional[OpenAI] = None


class AssistantNotConfigured(RuntimeError):
    pass


def get_client() -> OpenAI:
    global _client
    if _client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise AssistantNotConfigured("OPENAI_API_KEY not configured")
        _client = OpenAI(api_key=api_key)
    return _client


def get_model() -> str:
    return os.environ.get("OPENAI_MODEL", "gpt-4o")


def build_system_prompt(context: Dict[str, Any]) -> str:
    return (
        "Ets un assistent IA especialitzat en gestió de guàrdies escolars. "
        "Tens accés a les dades reals del sistema actual:\n\n"
        f"- Guàrdies avui: {context.get('guardies_avui', 0)}\n"
        f"- Total guàrdies al sistema: {context.get('total_guardies', 0)}\n"
        f"- Professors registrats: {context.get('professors', 0)}\n"
        f"- Sortides aquesta setmana: {context.get('sortides_setmana', 0)}\n"
        f"- Tasques pendents: {context.get('tasques_pendents', 0)}\n\n"
        "Ajudes amb la planificació i assignació de guàrdies, l'anàlisi de la "
        "càrrega de treball del professorat i la resolució de conflictes d'horaris. "
        "Respon sempre en català de manera útil i professional."
    )


def build_messages(message: str, history: List[Dict[str, str]], context: Dict[str, Any]) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": build_system_prompt(context)}]
    for turn in history[-HISTORY_LIMIT:]:
        messages.append({"role": turn["role"], "content": turn["content"]})
    messages.append({"role": "user", "content": message})
    return messages


def generate_chat_response(message: str, history: List[Dict[str, str]], context: Dict[str, Any]) -> str:
    """Ask the model; provider failures come back as a fixed apology text."""
    client = get_client()
    try:
        response = client.chat.completions.create(
            model=get_model(),
            messages=build_messages(message, history, context),
            max_tokens=500,
            temperature=0.7,
        )
    except Exception as exc:
        logger.error("Chat completion failed: %s", exc)
        return FALLBACK_RESPONSE
    content = response.choices[0].message.content if response.choices else None
    return content or EMPTY_RESPONSE
