"""
Handshake with the inference engine's OpenAI-compatible surface.

`init()` finds where the engine listens (from `service status`) and checks
that it reports the requested model. Callers always bound it with a timeout
and treat failure as a warning.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .control_plane import ControlPlaneClient
from .errors import ControlPlaneError, HandshakeError

logger = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"
PLACEHOLDER_API_KEY = "not-needed"


def endpoint_for_port(port: int) -> str:
    return f"http://{LOCAL_HOST}:{port}/v1"


@dataclass(frozen=True)
class EngineDescriptor:
    alias: str
    model_id: str
    endpoint: str


class EngineClient:
    def __init__(
        self,
        control_plane: ControlPlaneClient,
        api_key: str = PLACEHOLDER_API_KEY,
        http_timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.control_plane = control_plane
        self.api_key = api_key
        self.http_timeout_s = http_timeout_s
        self.endpoint: Optional[str] = None
        self._transport = transport

    async def discover_endpoint(self) -> str:
        try:
            port = await self.control_plane.service_port()
        except ControlPlaneError as e:
            raise HandshakeError(f"service status failed: {e}") from e
        if port is None:
            raise HandshakeError("service status did not report a listening URL")
        return endpoint_for_port(port)

    async def init(self, alias_or_id: str) -> EngineDescriptor:
        endpoint = await self.discover_endpoint()
        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout_s, transport=self._transport
            ) as client:
                resp = await client.get(
                    f"{endpoint}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise HandshakeError(f"engine at {endpoint} did not answer: {e}") from e

        served = [
            m.get("id")
            for m in (data.get("data") or [] if isinstance(data, dict) else [])
            if isinstance(m, dict) and m.get("id")
        ]
        model_id = _match_model(alias_or_id, served)
        if model_id is None:
            raise HandshakeError(f"engine does not serve {alias_or_id}")

        self.endpoint = endpoint
        logger.info("Engine handshake OK: %s -> %s at %s", alias_or_id, model_id, endpoint)
        return EngineDescriptor(alias=alias_or_id, model_id=model_id, endpoint=endpoint)


def _match_model(alias_or_id: str, served) -> Optional[str]:
    wanted = alias_or_id.lower()
    for model_id in served:
        if model_id.lower() == wanted:
            return model_id
    for model_id in served:
        if model_id.lower().startswith(wanted):
            return model_id
    return None
