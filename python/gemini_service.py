import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from settings import GEMINI_MODEL, GOOGLE_API_KEY

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a concise, helpful assistant. Provide a short, accurate answer "
    "in about 80-100 words. Avoid filler."
)


class UpstreamError(Exception):
    """Raised when the generation service cannot be reached or configured."""


_llm: Optional[ChatGoogleGenerativeAI] = None


def get_llm() -> ChatGoogleGenerativeAI:
    global _llm
    if _llm is None:
        if not GOOGLE_API_KEY:
            raise UpstreamError("GOOGLE_API_KEY not configured")
        _llm = ChatGoogleGenerativeAI(model=GEMINI_MODEL, google_api_key=GOOGLE_API_KEY)
        logger.info("Gemini client ready (model=%s)", GEMINI_MODEL)
    return _llm


def _turn_text(turn: Dict[str, Any]) -> str:
    parts = turn.get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def build_messages(prompt: str, history: Optional[List[Dict[str, Any]]] = None) -> List[BaseMessage]:
    """
    System instruction first, then prior turns in order, then the prompt.
    History turns use the wire shape {role, parts: [{text}]}.
    """
    messages: List[BaseMessage] = [SystemMessage(content=SYSTEM_INSTRUCTION)]
    for turn in history or []:
        text = _turn_text(turn)
        if not text:
            continue
        if turn.get("role") == "model":
            messages.append(AIMessage(content=text))
        else:
            messages.append(HumanMessage(content=text))
    messages.append(HumanMessage(content=prompt))
    return messages


async def stream_answer(prompt: str, history: Optional[List[Dict[str, Any]]] = None) -> AsyncIterator[Any]:
    """Yield raw upstream chunks for `prompt` as the model produces them."""
    llm = get_llm()
    messages = build_messages(prompt, history)
    logger.debug("Opening upstream stream (%d prior turns)", len(messages) - 2)
    async for chunk in llm.astream(messages):
        yield chunk
