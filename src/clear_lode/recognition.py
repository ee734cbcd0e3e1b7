# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (C) 2025 red1239109-cmd
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from . import _clip, _finite, fmt_ms
from .config import RecognitionConfig
from .event_bridge import (
    EventBridge,
    WINDOW_OPENED,
    ATTEMPT,
    TIME_EXTENDED,
    TIMEOUT_WARNING,
    SUCCEEDED,
    FAILED,
    ATTACHMENT,
)
from .karma import KarmaLedger, apply_named_delta
from .monitor import SyncMonitor
from .scheduler import Scheduler, TeardownList, TimerHandle

logger = logging.getLogger(__name__)


class WindowState(str, Enum):
    IDLE = "IDLE"
    OPEN = "OPEN"
    RECOGNIZED = "RECOGNIZED"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_STATES = (WindowState.RECOGNIZED, WindowState.TIMED_OUT)


@dataclass
class RecognitionSession:
    session_id: str
    start_ms: float
    base_duration_ms: float
    extension_duration_ms: float
    max_extensions: int
    warning_threshold: float
    extensions_granted: int = 0
    state: WindowState = WindowState.IDLE
    attempts: int = 0
    last_progress: float = 0.0
    method: Optional[str] = None
    elapsed_ms: Optional[float] = None

    @property
    def total_duration_ms(self) -> float:
        return self.base_duration_ms + self.extensions_granted * self.extension_duration_ms

    @property
    def deadline_ms(self) -> float:
        return self.start_ms + self.total_duration_ms

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["total_duration_ms"] = self.total_duration_ms
        d["deadline_ms"] = self.deadline_ms
        return d


class RecognitionWindow:
    """
    Timed recognition challenge.

        IDLE --open()--> OPEN --complete()--> RECOGNIZED
                         OPEN --timeout-----> TIMED_OUT

    Progress crossing warning_threshold earns one extension per extension
    period, up to max_extensions. Timing out is an outcome, not an error.
    """

    def __init__(
        self,
        bridge: EventBridge,
        scheduler: Scheduler,
        ledger: Optional[KarmaLedger] = None,
        config: Optional[RecognitionConfig] = None,
        monitor: Optional[SyncMonitor] = None,
    ):
        self.bridge = bridge
        self.scheduler = scheduler
        self.ledger = ledger
        self.cfg = config or RecognitionConfig()
        self.monitor = monitor
        self.session: Optional[RecognitionSession] = None
        # effective config of the current session
        self._session_cfg: RecognitionConfig = self.cfg

        self._timers: List[TimerHandle] = []
        self._teardown = TeardownList("RecognitionWindow")
        self._teardown.register(self._cancel_timers, label="recognition timers")

    # -----------------------------
    # state accessors
    # -----------------------------
    @property
    def state(self) -> WindowState:
        return self.session.state if self.session else WindowState.IDLE

    @property
    def is_open(self) -> bool:
        return self.state == WindowState.OPEN

    def remaining_ms(self) -> float:
        if not self.is_open:
            return 0.0
        return max(0.0, self.session.deadline_ms - self.scheduler.now())

    # -----------------------------
    # transitions
    # -----------------------------
    def open(self, config: Union[RecognitionConfig, Dict[str, Any], None] = None) -> Optional[RecognitionSession]:
        if self._teardown.released:
            logger.warning("open() ignored: RecognitionWindow already destroyed")
            return self.session
        if self.is_open:
            logger.info(f"Recognition window already open ({self.session.session_id}); ignoring open()")
            return self.session

        if isinstance(config, dict):
            config = RecognitionConfig.from_dict(config)
        cfg = config or self.cfg
        self._session_cfg = cfg

        self.session = RecognitionSession(
            session_id=f"rw_{uuid.uuid4().hex[:8]}",
            start_ms=self.scheduler.now(),
            base_duration_ms=max(0.0, float(cfg.base_duration_ms)),
            extension_duration_ms=max(0.0, float(cfg.extension_duration_ms)),
            max_extensions=max(0, int(cfg.max_extensions)),
            warning_threshold=_clip(float(cfg.warning_threshold), 0.0, 1.0),
            state=WindowState.OPEN,
        )
        self._schedule_timers()
        logger.info(
            f"Recognition window opened: {self.session.session_id} "
            f"base={fmt_ms(self.session.base_duration_ms)} max_ext={self.session.max_extensions}"
        )
        self.bridge.emit(WINDOW_OPENED, {})
        return self.session

    def record_attempt(self, method: str, progress: float) -> bool:
        """Returns True when this attempt earned a time extension."""
        if not self.is_open:
            logger.debug(f"Attempt ignored in state {self.state.value}: {method}")
            return False

        s = self.session
        p = _clip(_finite(progress), 0.0, 1.0)
        s.attempts += 1
        crossed = p >= s.warning_threshold and s.last_progress < s.warning_threshold
        s.last_progress = p

        self.bridge.emit(ATTEMPT, {"method": method, "progress": p})

        # a subscriber may have completed the window during dispatch
        if not crossed or not self.is_open:
            return False
        return self._extend()

    def _extend(self) -> bool:
        s = self.session
        if s.extensions_granted >= s.max_extensions:
            logger.info(f"Extension rejected: {s.extensions_granted}/{s.max_extensions} already granted")
            return False

        s.extensions_granted += 1
        # new extension period
        s.last_progress = 0.0
        self._schedule_timers()
        logger.info(
            f"Recognition window extended ({s.extensions_granted}/{s.max_extensions}); "
            f"deadline now {fmt_ms(s.deadline_ms)}"
        )
        self.bridge.emit(TIME_EXTENDED, {"extensionMs": s.extension_duration_ms})
        return True

    def complete(self, method: str) -> bool:
        if not self.is_open:
            logger.debug(f"complete({method}) ignored in state {self.state.value}")
            return False

        s = self.session
        s.state = WindowState.RECOGNIZED
        s.method = method
        s.elapsed_ms = self.scheduler.now() - s.start_ms
        self._cancel_timers()

        cfg = self._session_cfg
        if cfg.apply_karma:
            perfect = cfg.perfect_min_ms <= s.elapsed_ms <= cfg.perfect_max_ms
            apply_named_delta(self.ledger, "perfect_recognition" if perfect else "delayed_recognition")
        if self.monitor is not None:
            self.monitor.recognition_outcome("recognized")

        logger.info(f"Recognition achieved through {method} at {fmt_ms(s.elapsed_ms)}")
        self.bridge.emit(SUCCEEDED, {"method": method, "elapsedMs": s.elapsed_ms})
        return True

    def _on_timeout(self) -> None:
        if not self.is_open:
            return
        s = self.session
        s.state = WindowState.TIMED_OUT
        s.elapsed_ms = self.scheduler.now() - s.start_ms
        self._cancel_timers()

        if self._session_cfg.apply_karma:
            apply_named_delta(self.ledger, "missed_recognition")
        if self.monitor is not None:
            self.monitor.recognition_outcome("timed_out")

        logger.info(f"Recognition window closed - opportunity missed ({fmt_ms(s.elapsed_ms)})")
        self.bridge.emit(FAILED, {})

    def _on_warning(self) -> None:
        if self.is_open:
            self.bridge.emit(TIMEOUT_WARNING, {"remainingMs": self.remaining_ms()})

    def record_attachment(self, kind: str, detail: Optional[Dict[str, Any]] = None) -> bool:
        if not self.is_open:
            return False
        logger.info(f"Attachment formed: {kind}")
        if self._session_cfg.apply_karma:
            apply_named_delta(self.ledger, "attachment_click")
        self.bridge.emit(ATTACHMENT, {"type": kind, "detail": dict(detail or {})})
        return True

    # -----------------------------
    # timers
    # -----------------------------
    def _schedule_timers(self) -> None:
        self._cancel_timers()
        s = self.session
        now = self.scheduler.now()
        self._timers.append(
            self.scheduler.after(s.deadline_ms - now, self._on_timeout, label="recognition.timeout")
        )
        warn_at = s.start_ms + s.warning_threshold * s.total_duration_ms
        if warn_at > now and s.warning_threshold < 1.0:
            self._timers.append(
                self.scheduler.after(warn_at - now, self._on_warning, label="recognition.warning")
            )

    def _cancel_timers(self) -> None:
        for h in self._timers:
            h.cancel()
        self._timers = []

    def destroy(self) -> None:
        self._teardown.release_all()
        logger.debug("RecognitionWindow destroyed")
