import asyncio
import logging
import socket
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from ..agent_config import AgentConfig
from ..scanner.service import CertificateScannerService
from ..state.errors import StatePersistenceError
from ..state.manager import StateManager
from ..version import VERSION

logger = logging.getLogger("cw-agent.sync")


class SyncError(Exception):
    """The CertWatch API rejected a request or returned something unusable."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class SyncService:
    """
    Sync Service.
    Responsibility: Register the agent with the CertWatch API, migrate certificates
    after an identity reset, and push the latest scan results on the sync interval.

    Flow per cycle:
        no agent_id           → POST /api/v1/agents/register, save
        previous_agent_id set → POST /api/v1/agents/{id}/migrate, clear marker, save
                                (a rejected migration keeps the marker and does not block the sync)
        always                → POST /api/v1/agents/{id}/sync, save last_sync_at
    """

    def __init__(
        self,
        config: AgentConfig,
        state_manager: StateManager,
        scanner: CertificateScannerService,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config
        self._state = state_manager
        self._scanner = scanner
        self._session = session
        self._own_session = session is None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        self._running = True
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.api.timeout.total_seconds())
            )
        self._task = asyncio.create_task(self._sync_loop())
        logger.info(f"SyncService started (endpoint={self._config.api.endpoint}).")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session and self._own_session:
            await self._session.close()
        logger.info("SyncService stopped.")

    def _url(self, path: str) -> str:
        return f"{self._config.api.endpoint}/api/v1{path}"

    def _headers(self) -> dict:
        return {"X-API-Key": self._config.api.key, "User-Agent": f"cw-agent/{VERSION}"}

    async def _post(self, path: str, payload: dict) -> tuple[int, dict]:
        async with self._session.post(self._url(path), json=payload, headers=self._headers()) as resp:
            if resp.status in (200, 201):
                body = await resp.json(content_type=None)
                return resp.status, body if isinstance(body, dict) else {}
            text = await resp.text()
            return resp.status, {"error": text}

    async def _save(self, reason: str) -> bool:
        """Routine saves never stop the agent; a failure is retried on the next cycle."""
        try:
            await asyncio.to_thread(self._state.save)
            return True
        except StatePersistenceError as e:
            logger.error(f"Could not persist agent state after {reason}: {e}. Will retry next cycle.")
            return False

    async def _register(self):
        name = self._config.agent.name
        payload = {"name": name, "hostname": socket.gethostname(), "version": VERSION}
        status, body = await self._post("/agents/register", payload)
        if status not in (200, 201):
            raise SyncError(f"Registration rejected: {status} - {body.get('error', '')}", status)

        agent_id = body.get("agent_id") or body.get("id")
        if not agent_id:
            raise SyncError("Registration response did not include an agent_id", status)
        try:
            self._state.set_agent_id(str(agent_id))
        except ValueError as e:
            raise SyncError(f"Registration returned an unusable agent_id: {e}", status) from e
        self._state.set_agent_name(name)
        logger.info(f"Registered agent {name!r} as {agent_id}")
        await self._save("registration")

    async def _migrate(self, agent_id: str, previous_agent_id: str):
        status, body = await self._post(f"/agents/{agent_id}/migrate", {"previous_agent_id": previous_agent_id})
        if status == 404:
            logger.warning(f"Previous agent {previous_agent_id} is unknown to the API; nothing to migrate")
        elif status not in (200, 201):
            raise SyncError(f"Migration rejected: {status} - {body.get('error', '')}", status)
        else:
            logger.info(
                f"Migrated certificates from {previous_agent_id}: "
                f"{body.get('migrated', 0)} moved, {body.get('orphaned', 0)} orphaned"
            )
        self._state.clear_previous_agent_id()
        await self._save("migration")

    async def _push(self, agent_id: str):
        results = self._scanner.latest_results()
        payload = {
            "agent_name": self._config.agent.name,
            "certificates": [r.model_dump(mode="json") for r in results],
        }
        status, body = await self._post(f"/agents/{agent_id}/sync", payload)
        if status == 404:
            # Agent was deleted server-side; register again next cycle
            logger.warning(f"Agent {agent_id} not found on the API, re-registering on next sync")
            self._state.set_agent_id("")
            return
        if status not in (200, 201):
            raise SyncError(f"Sync rejected: {status} - {body.get('error', '')}", status)

        self._state.set_last_sync_at(datetime.now(timezone.utc))
        logger.info(f"Synced {len(results)} certificates")
        await self._save("sync")

    async def sync_once(self):
        """One register/migrate/sync pass. Raises SyncError or aiohttp.ClientError."""
        if not self._state.get_agent_id():
            await self._register()

        agent_id = self._state.get_agent_id()
        previous_agent_id = self._state.get_previous_agent_id()
        if previous_agent_id:
            try:
                await self._migrate(agent_id, previous_agent_id)
            except SyncError as e:
                # Marker is kept; certificate health is still reported this cycle
                logger.error(f"{e}. Migration from {previous_agent_id} will be retried next cycle.")

        await self._push(agent_id)

    async def _sync_loop(self):
        interval = self._config.agent.sync_interval.total_seconds()
        while self._running:
            try:
                await self.sync_once()
            except aiohttp.ClientError as e:
                logger.warning(f"CertWatch API not reachable ({type(e).__name__}: {e}). Retrying in {interval:.0f}s.")
            except (SyncError, asyncio.TimeoutError) as e:
                logger.error(f"Sync failed: {e or type(e).__name__}. Retrying in {interval:.0f}s.")
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)
            await asyncio.sleep(interval)
