"""
Keeps at most one model resident in the engine.

The control plane offers no notifications, so every change is confirmed by
re-reading `service list` in a bounded poll. Waiting for evicted models to
disappear is best effort; waiting for a loaded model to appear is not.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from .config import GatewayConfig
from .control_plane import ControlPlaneClient, StreamLine
from .engine import EngineClient
from .errors import ControlPlaneError, ConvergenceTimeout, HandshakeError
from .events import EventChannel
from .tables import ListingEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResidencySlot:
    """The one model this gateway believes is resident."""

    alias: Optional[str] = None
    model_id: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.model_id

    def holds(self, alias: str) -> bool:
        return bool(self.model_id) and self.alias == alias

    def commit(self, alias: str, model_id: str) -> None:
        self.alias = alias
        self.model_id = model_id

    def clear(self) -> None:
        self.alias = None
        self.model_id = None

    def clear_if(self, name: str) -> bool:
        """Clear when name matches the held alias or model id."""
        if name and name in (self.alias, self.model_id):
            self.clear()
            return True
        return False

    def to_dict(self) -> dict:
        return {"alias": self.alias, "modelId": self.model_id}


@dataclass(frozen=True)
class ConvergencePolicy:
    interval_s: float
    timeout_s: float
    fail_on_timeout: bool


async def wait_until(
    probe: Callable[[], Awaitable[Optional[T]]],
    policy: ConvergencePolicy,
    message: str,
) -> Optional[T]:
    """
    Call probe every interval until it returns something truthy or the
    ceiling passes. On timeout either raise ConvergenceTimeout(message) or
    log it and return None, as the policy says. Probe failures count as
    "not yet".
    """
    deadline = time.monotonic() + policy.timeout_s
    while True:
        try:
            result = await probe()
        except ControlPlaneError as e:
            logger.warning("Poll failed (%s); retrying", e)
            result = None
        if result:
            return result
        if time.monotonic() >= deadline:
            break
        await asyncio.sleep(policy.interval_s)

    if policy.fail_on_timeout:
        raise ConvergenceTimeout(message, policy.timeout_s)
    logger.warning("%s after %.0fs; proceeding anyway", message, policy.timeout_s)
    return None


class ResidencyController:
    def __init__(
        self,
        control_plane: ControlPlaneClient,
        engine: EngineClient,
        config: GatewayConfig,
        slot: Optional[ResidencySlot] = None,
    ):
        self.control_plane = control_plane
        self.engine = engine
        self.slot = slot if slot is not None else ResidencySlot()
        self.handshake_timeout_s = config.handshake_timeout_s
        self.unload_policy = ConvergencePolicy(
            config.poll_interval_s, config.unload_timeout_s, fail_on_timeout=False
        )
        self.load_policy = ConvergencePolicy(
            config.poll_interval_s, config.load_timeout_s, fail_on_timeout=True
        )
        # one residency-changing operation at a time
        self.lock = asyncio.Lock()

    async def find_resident(self, alias: str) -> Optional[str]:
        for entry in await self.control_plane.list_resident():
            if entry.alias == alias:
                return entry.model_id
        return None

    async def ensure_resident(
        self, alias: str, model_id: str, channel: Optional[EventChannel] = None
    ) -> str:
        """
        Make model_id the only resident model and return the id the listing
        reports for it. Progress goes to channel; the last event is
        {"done": True, "modelId": ...}.
        """
        channel = channel if channel is not None else EventChannel()
        async with self.lock:
            return await self._ensure_resident(alias, model_id, channel)

    async def _ensure_resident(self, alias: str, model_id: str, channel: EventChannel) -> str:
        logger.info("Ensuring %s (%s) is resident", model_id, alias)
        residents = await self.control_plane.list_resident()
        already_loaded = any(e.model_id == model_id for e in residents)

        others = [e for e in residents if e.model_id != model_id]
        if others:
            await self._evict(others, channel)
            await wait_until(
                lambda: self._only_target_left(model_id),
                self.unload_policy,
                "Previous models still listed as resident",
            )

        if already_loaded:
            channel.log(f"Model {model_id} already loaded")
            await self._handshake(alias, channel)
            self.slot.commit(alias, model_id)
            channel.send({"done": True, "modelId": model_id})
            return model_id

        channel.log(f"Loading model: {model_id}")
        await self.control_plane.load_model(model_id, on_line=_relay(channel))

        resolved = await wait_until(
            lambda: self._appeared(alias, model_id),
            self.load_policy,
            "Model did not appear in service after loading",
        )
        logger.info("Polling complete, resident model: %s", resolved)

        await self._handshake(alias, channel)
        self.slot.commit(alias, resolved)
        channel.send({"done": True, "modelId": resolved})
        return resolved

    async def _evict(self, entries: List[ListingEntry], channel: EventChannel) -> None:
        for entry in entries:
            channel.log(f"Unloading model present in service: {entry.model_id}")
            try:
                await self.control_plane.unload_model(entry.model_id, on_line=_relay(channel))
            except ControlPlaneError as e:
                # this alias stays resident; carry on with the rest
                logger.error("Unload of %s failed: %s", entry.model_id, e)
                channel.log(f"Warning: failed to unload {entry.model_id} ({e.describe_exit()})")
                continue
            channel.log(f"Unloaded {entry.model_id}")
            channel.send({"unloaded": entry.alias})
            self.slot.clear_if(entry.model_id)
            logger.info("Unloaded model %s", entry.model_id)

    async def _only_target_left(self, model_id: str) -> bool:
        residents = await self.control_plane.list_resident()
        return all(e.model_id == model_id for e in residents)

    async def _appeared(self, alias: str, model_id: str) -> Optional[str]:
        residents = await self.control_plane.list_resident()
        for entry in residents:
            if entry.model_id == model_id:
                return entry.model_id
        for entry in residents:
            if entry.alias == alias:
                return entry.model_id
        return None

    async def _handshake(self, alias: str, channel: EventChannel) -> None:
        try:
            await asyncio.wait_for(self.engine.init(alias), timeout=self.handshake_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Engine handshake for %s timed out", alias)
            channel.log("Warning: engine handshake timed out (continuing anyway)")
        except HandshakeError as e:
            logger.warning("Engine handshake for %s failed: %s", alias, e)
            channel.log(f"Warning: engine handshake issue: {e} (continuing anyway)")

    async def release(self, name: str, force: bool = False) -> bool:
        """
        Unload name (alias or model id). Without force this is a no-op and
        the engine's own idle policy decides when the model goes. Returns
        True when something was unloaded.
        """
        if not force:
            logger.info("Leaving %s resident; the engine's idle policy applies", name)
            return False
        async with self.lock:
            residents = await self.control_plane.list_resident()
            targets = [e for e in residents if name in (e.alias, e.model_id)]
            for entry in targets:
                await self.control_plane.unload_model(entry.model_id)
                logger.info("Released %s", entry.model_id)
            self.slot.clear_if(name)
            for entry in targets:
                self.slot.clear_if(entry.model_id)
            return bool(targets)

    async def unload_all(self) -> List[str]:
        """Evict everything at startup so no model is preloaded."""
        unloaded = []
        async with self.lock:
            for entry in await self.control_plane.list_resident():
                try:
                    await self.control_plane.unload_model(entry.model_id)
                except ControlPlaneError as e:
                    logger.error("Startup unload of %s failed: %s", entry.model_id, e)
                    continue
                logger.info("Startup: unloaded %s", entry.model_id)
                unloaded.append(entry.model_id)
            self.slot.clear()
        return unloaded


def _relay(channel: EventChannel) -> Callable[[StreamLine], None]:
    def _on_line(line: StreamLine) -> None:
        channel.log(line.text)

    return _on_line
