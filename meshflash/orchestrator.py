"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Flash Orchestrator Module
"""

import time
import logging
from typing import Callable, Iterator, Optional

from meshflash.drives import DriveLister
from meshflash.errors import FlashError
from meshflash.firmware import FirmwareRepository
from meshflash.models import (
    ConnectedDevice,
    FirmwareSelection,
    FlashPhase,
    FlashSession,
    ProgressEvent,
)
from meshflash.strategies import (
    BootloaderClient,
    BootloaderFlashStrategy,
    FlashMethod,
    MassStorageFlashStrategy,
    select_strategy,
)
from meshflash.transport import FramedSerialTransport
from meshflash.utils import time_formatter

logger = logging.getLogger("Orchestrator")


class FlashOrchestrator:
    """
    Runs one firmware update at a time.

    flash() returns an iterator of ProgressEvents; the update advances as the
    caller consumes it. A failure ends the stream with a 'failed' event and
    then raises the underlying error.

    Example:
        orchestrator = FlashOrchestrator(repository, client)
        for event in orchestrator.flash(device, selection):
            print(event.phase.value, event.percent, event.message)
    """

    def __init__(
        self,
        repository: FirmwareRepository,
        bootloader_client: BootloaderClient,
        drive_lister: Optional[DriveLister] = None,
        port_lister: Optional[Callable] = None,
        transport_factory: Callable[[str], FramedSerialTransport] = FramedSerialTransport,
    ):
        self.session: Optional[FlashSession] = None
        self.strategies = {
            FlashMethod.MASS_STORAGE: MassStorageFlashStrategy(repository, drive_lister),
            FlashMethod.BOOTLOADER: BootloaderFlashStrategy(
                repository, bootloader_client, port_lister, transport_factory
            ),
        }

    @property
    def busy(self) -> bool:
        return self.session is not None and not self.session.is_terminal

    def flash(
        self,
        device: ConnectedDevice,
        selection: FirmwareSelection,
        clean_install: bool = False,
    ) -> Iterator[ProgressEvent]:
        """
        Returns the event stream of a new update. The orchestrator is only
        claimed once the stream is consumed; a stream that is dropped unread
        leaves it free.
        """
        if self.busy:
            raise FlashError("Another firmware update is still in progress.")
        if device.target is None:
            raise FlashError("The connected device has no known hardware target.")
        return self._run(FlashSession(device, selection, clean_install))

    def _run(self, session: FlashSession) -> Iterator[ProgressEvent]:
        if self.busy:
            raise FlashError("Another firmware update is still in progress.")
        self.session = session
        logger.info(
            f"Flashing {session.selection.filename} to {session.device.target.display_name} "
            f"on {session.device.port.path}{' (clean install)' if session.clean_install else ''}"
        )
        start_time = time.time()
        try:
            yield session.advance(FlashPhase.DETERMINING_STRATEGY, "Determining flash method...")
            method = select_strategy(session.device.target.architecture)
            session.strategy = method.value
            logger.debug(f"Using {method.value} for {session.device.target.architecture.value}")
            yield from self.strategies[method].run(session)
            logger.info(f"Firmware update finished in {time_formatter(time.time() - start_time)}")
        except GeneratorExit:
            # The consumer closed the stream.
            if not session.is_terminal:
                session.fail("Cancelled")
                logger.warning(f"Firmware update cancelled during {session.failed_phase.value}")
            raise
        except Exception as e:
            event = session.fail(str(e))
            logger.error(event.message)
            yield event
            raise
