import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urldefrag

import redis

from settings import CONVERSATION_NS, REDIS_TIMEOUT, REDIS_URL

logger = logging.getLogger(__name__)

MAX_TURNS = 10
ROLES = ("user", "model")


@dataclass(frozen=True)
class Turn:
    role: str
    text: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role!r}")

    def to_wire(self) -> Dict[str, Any]:
        return {"role": self.role, "parts": [{"text": self.text}]}

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        return cls(role=data["role"], text=data["text"])


class Conversation:
    """Ordered turns for one page, capped after every model turn."""

    def __init__(self, turns: Optional[List[Turn]] = None, max_turns: int = MAX_TURNS):
        self.turns: List[Turn] = list(turns or [])
        self.max_turns = max_turns

    def __len__(self):
        return len(self.turns)

    def add_user(self, text: str) -> Turn:
        turn = Turn("user", text)
        self.turns.append(turn)
        return turn

    def add_model(self, text: str) -> Turn:
        turn = Turn("model", text)
        self.turns.append(turn)
        if len(self.turns) > self.max_turns:
            self.turns = self.turns[-self.max_turns:]
        return turn

    def prior_history(self) -> List[Dict[str, Any]]:
        """Wire-form turns minus the most recent one (the prompt being sent)."""
        return [t.to_wire() for t in self.turns[:-1]]

    def last_model_turn(self) -> Optional[Turn]:
        for turn in reversed(self.turns):
            if turn.role == "model":
                return turn
        return None

    def clear(self) -> None:
        self.turns = []

    def to_json(self) -> str:
        return json.dumps([t.to_dict() for t in self.turns])

    @classmethod
    def from_json(cls, raw: str, max_turns: int = MAX_TURNS) -> "Conversation":
        return cls([Turn.from_dict(item) for item in json.loads(raw)], max_turns=max_turns)


def page_key(url: str, namespace: str = CONVERSATION_NS) -> str:
    page, _fragment = urldefrag(url.strip())
    digest = hashlib.sha1(page.encode("utf-8")).hexdigest()
    return f"{namespace}:page:{digest}"


class ConversationStore:
    """
    Per-page conversation persistence.

    Redis is the primary store; when it raises, the entry goes to an
    in-process dict instead. Nothing here raises to the caller: losing
    history is not fatal.
    """

    def __init__(self, client: Optional[Any] = None, namespace: str = CONVERSATION_NS):
        self.client = client
        self.namespace = namespace
        self._fallback: Dict[str, str] = {}

    @classmethod
    def from_url(cls, url: str = REDIS_URL, namespace: str = CONVERSATION_NS,
                 timeout: float = REDIS_TIMEOUT) -> "ConversationStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, namespace=namespace)

    def key_for(self, page_url: str) -> str:
        return page_key(page_url, self.namespace)

    def save(self, page_url: str, conversation: Conversation) -> bool:
        key = self.key_for(page_url)
        payload = conversation.to_json()
        if self.client is not None:
            try:
                self.client.set(key, payload)
                self._fallback.pop(key, None)
                return True
            except redis.RedisError as e:
                logger.debug("Redis save failed for %s, keeping in memory: %s", key, e)
        self._fallback[key] = payload
        return False

    def load(self, page_url: str) -> Conversation:
        key = self.key_for(page_url)
        raw = None
        if self.client is not None:
            try:
                raw = self.client.get(key)
            except redis.RedisError as e:
                logger.debug("Redis load failed for %s: %s", key, e)
        if not raw:
            raw = self._fallback.get(key)
        if not raw:
            return Conversation()
        try:
            return Conversation.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Discarding unreadable conversation %s: %s", key, e)
            return Conversation()

    def delete(self, page_url: str) -> None:
        key = self.key_for(page_url)
        self._fallback.pop(key, None)
        if self.client is None:
            return
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.debug("Redis delete failed for %s: %s", key, e)
