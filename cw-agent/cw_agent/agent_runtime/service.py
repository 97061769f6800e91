import asyncio
import logging
import signal
from typing import Optional

from ..agent_config import AgentConfig
from ..scanner.service import CertificateScannerService
from ..state.manager import StateManager
from ..sync.service import SyncService

logger = logging.getLogger("cw-agent.runtime")


class AgentRuntime:
    """
    Agent Runtime.
    Responsibility: Wire the scanner and sync workers around one shared StateManager,
    run them until SIGINT/SIGTERM, then shut them down in reverse order.
    """

    def __init__(
        self,
        config: AgentConfig,
        state_manager: StateManager,
        scanner: Optional[CertificateScannerService] = None,
        sync: Optional[SyncService] = None,
    ):
        self.config = config
        self.state = state_manager
        self.scanner = scanner or CertificateScannerService(config)
        self.sync = sync or SyncService(config, state_manager, self.scanner)
        self._stop_event: Optional[asyncio.Event] = None
        self._received_signal: Optional[signal.Signals] = None

    @property
    def received_signal(self) -> Optional[signal.Signals]:
        return self._received_signal

    def request_stop(self, sig: Optional[signal.Signals] = None):
        if sig is not None:
            self._received_signal = sig
            logger.info(f"Received {sig.name}, shutting down...")
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except (NotImplementedError, RuntimeError):
                # Not available on Windows or outside the main thread
                logger.debug(f"Signal handler for {sig.name} not installed")

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    async def run(self):
        """Run until request_stop() is called or a shutdown signal arrives."""
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._install_signal_handlers(loop)

        try:
            # First scan before the first sync so the initial report is not empty
            await self.scanner.scan_all()
            await self.scanner.start()
            await self.sync.start()
            logger.info(f"Agent {self.config.agent.name!r} running")

            await self._stop_event.wait()
        finally:
            await self.sync.stop()
            await self.scanner.stop()
            self._remove_signal_handlers(loop)
            logger.info("Agent stopped")
