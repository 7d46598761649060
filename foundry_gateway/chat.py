"""
Chat relay: alias -> resident model -> endpoint -> streamed completion.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import openai

from .config import GatewayConfig
from .control_plane import ControlPlaneClient
from .engine import PLACEHOLDER_API_KEY, EngineClient, endpoint_for_port
from .errors import ControlPlaneError, HandshakeError, ModelNotFoundError
from .residency import ResidencyController

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"
UPSTREAM_FAILURE = "Failed to get response from model"


@dataclass
class ChatSession:
    """Append-only conversation history."""

    messages: List[Dict[str, str]] = field(default_factory=list)

    def append(self, role: str, content: str) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"unsupported role: {role}")
        self.messages.append({"role": role, "content": content})

    def __len__(self) -> int:
        return len(self.messages)


class ChatSessionStore:
    """Sessions by key; requests without a key share the default one."""

    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}

    def get(self, key: Optional[str] = None) -> ChatSession:
        key = key or DEFAULT_SESSION
        if key not in self._sessions:
            self._sessions[key] = ChatSession()
        return self._sessions[key]

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class ChatTurn:
    alias: str
    model_id: str
    endpoint: str
    api_key: str
    session: ChatSession


class ChatProxy:
    def __init__(
        self,
        control_plane: ControlPlaneClient,
        residency: ResidencyController,
        engine: EngineClient,
        config: GatewayConfig,
        sessions: Optional[ChatSessionStore] = None,
        client_factory: Callable[..., "openai.AsyncOpenAI"] = openai.AsyncOpenAI,
    ):
        self.control_plane = control_plane
        self.residency = residency
        self.engine = engine
        self.sessions = sessions if sessions is not None else ChatSessionStore()
        self.handshake_timeout_s = config.chat_handshake_timeout_s
        self.default_port = config.default_service_port
        self.max_tokens = config.chat_max_tokens
        self._client_factory = client_factory

    async def resolve_model(self, alias: str) -> str:
        slot = self.residency.slot
        if slot.holds(alias):
            logger.info("Using tracked loaded model: %s", slot.model_id)
            return slot.model_id

        model_id = await self.residency.find_resident(alias)
        if model_id:
            return model_id

        logger.info("Model %s not loaded, checking cache...", alias)
        cached = next((e for e in await self.control_plane.list_cached() if e.alias == alias), None)
        if cached is None:
            raise ModelNotFoundError("Model alias not found in cache")
        return await self.residency.ensure_resident(alias, cached.model_id)

    async def fallback_endpoint(self) -> str:
        try:
            port = await self.control_plane.service_port()
        except ControlPlaneError as e:
            logger.warning("service status failed (%s); using default port", e)
            port = None
        endpoint = endpoint_for_port(port or self.default_port)
        logger.info("Using fallback endpoint: %s", endpoint)
        return endpoint

    async def resolve_endpoint(self, alias: str):
        try:
            await asyncio.wait_for(self.engine.init(alias), timeout=self.handshake_timeout_s)
            if self.engine.endpoint:
                return self.engine.endpoint, self.engine.api_key
        except asyncio.TimeoutError:
            logger.warning("Engine init for %s timed out; using fallback endpoint", alias)
        except HandshakeError as e:
            logger.warning("Engine init for %s failed (%s); using fallback endpoint", alias, e)
        return await self.fallback_endpoint(), PLACEHOLDER_API_KEY

    async def prepare(self, alias: str, message: str, session_key: Optional[str] = None) -> ChatTurn:
        """Resolve everything needed to stream, then record the user message."""
        model_id = await self.resolve_model(alias)
        endpoint, api_key = await self.resolve_endpoint(alias)
        session = self.sessions.get(session_key)
        session.append("user", message)
        return ChatTurn(alias=alias, model_id=model_id, endpoint=endpoint, api_key=api_key, session=session)

    @staticmethod
    def delta_text(chunk, alias: str) -> str:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return ""
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        if not content and "qwen" in alias.lower():
            # some qwen builds put the text on the choice itself
            content = getattr(choice, "text", None)
        return content or ""

    async def stream(
        self,
        turn: ChatTurn,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[dict]:
        """
        Yield {"content"} per delta, then {"done": True} or {"error"}. The
        upstream stream is closed as soon as the caller goes away.
        """
        client = self._client_factory(base_url=turn.endpoint, api_key=turn.api_key)
        upstream = None
        reply: List[str] = []
        try:
            logger.info(
                "Sending chat request: model=%s messages=%d", turn.model_id, len(turn.session)
            )
            upstream = await client.chat.completions.create(
                model=turn.model_id,
                messages=list(turn.session.messages),
                stream=True,
                max_tokens=self.max_tokens,
            )
            async for chunk in upstream:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("Client disconnected; stopping upstream stream")
                    break
                content = self.delta_text(chunk, turn.alias)
                if content:
                    reply.append(content)
                    yield {"content": content}
        except openai.OpenAIError as e:
            logger.error("Chat completion failed: %s", e)
            yield {"error": UPSTREAM_FAILURE}
            return
        finally:
            if upstream is not None:
                await upstream.close()
            await client.close()

        turn.session.append("assistant", "".join(reply))
        yield {"done": True}
