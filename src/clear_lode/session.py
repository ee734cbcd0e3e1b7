# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .config import EngineConfig
from .corruption import CorruptionEngine, RngFactory
from .event_bridge import EventBridge
from .interfaces import AudioChannel, PresentationSink, NullPresentationSink
from .karma import KarmaLedger, InMemoryKarmaLedger
from .monitor import SyncMonitor
from .recognition import RecognitionWindow
from .scheduler import Scheduler
from .sync import SyncController

logger = logging.getLogger(__name__)


class ClearLodeSession:
    """
    One experience phase: bridge, scheduler, engine, window and sync wired together.

    Usable as a context manager; leaving the block destroys every component
    whether the body returned or raised.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        ledger: Optional[KarmaLedger] = None,
        audio: Optional[AudioChannel] = None,
        sink: Optional[PresentationSink] = None,
        scheduler: Optional[Scheduler] = None,
        monitor: Optional[SyncMonitor] = None,
        rng_factory: Optional[RngFactory] = None,
    ):
        self.cfg = config or EngineConfig()
        self.scheduler = scheduler or Scheduler()
        self.bridge = EventBridge(clock=self.scheduler.now, maxlen=self.cfg.event_history)
        self.ledger = ledger if ledger is not None else InMemoryKarmaLedger()
        self.audio = audio
        self.sink = sink or NullPresentationSink()
        self.monitor = monitor or SyncMonitor()

        self.corruption = CorruptionEngine(
            self.bridge, self.scheduler, ledger=self.ledger, config=self.cfg.corruption,
            sink=self.sink, monitor=self.monitor, rng_factory=rng_factory,
        )
        self.window = RecognitionWindow(
            self.bridge, self.scheduler, ledger=self.ledger, config=self.cfg.recognition,
            monitor=self.monitor,
        )
        self.sync = SyncController(
            self.bridge, self.scheduler, corruption=self.corruption, audio=self.audio,
            sink=self.sink, ledger=self.ledger, config=self.cfg.sync, monitor=self.monitor,
        )
        self._started = False
        self._destroyed = False

    def start(self) -> "ClearLodeSession":
        if self._started:
            return self
        self._started = True
        self.corruption.start()
        self.sync.start()
        logger.info("ClearLodeSession started")
        return self

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        # reverse construction order
        for name, component in (("sync", self.sync), ("window", self.window), ("corruption", self.corruption)):
            try:
                component.destroy()
            except Exception:
                logger.exception(f"Failed to destroy {name}")
        self.bridge.destroy()
        self.scheduler.cancel_all()
        logger.info("ClearLodeSession destroyed")

    def __enter__(self) -> "ClearLodeSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.destroy()
        return False

    def snapshot(self) -> Dict[str, Any]:
        session = self.window.session
        return {
            "now_ms": self.scheduler.now(),
            "karma": self.ledger.get_state().as_dict(),
            "window": session.as_dict() if session else None,
            "corruption": self.corruption.stats(),
            "sync": self.sync.status(),
        }
