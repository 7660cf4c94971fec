from __future__ import annotations

import enum
import sys
import threading
import time
from typing import Dict, List


class Phase(enum.Enum):
    CONNECT = "coverage connect"
    COLLECT = "coverage collect"
    PARSE = "coverage parse"
    ADD_HITMAP = "coverage add hitmap"
    FINALIZE = "coverage finalize"


class PhaseTimer:
    """Records the time spent in each collection phase.

    Phases may be entered from several threads at once (one per device being
    collected), so each thread keeps its own start times.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.totals: Dict[Phase, float] = {p: 0.0 for p in Phase}
        self._local = threading.local()

    def _started(self) -> Dict[Phase, float]:
        if not hasattr(self._local, "started"):
            self._local.started = dict()
        return self._local.started

    def start(self, phase: Phase) -> None:
        self._started()[phase] = time.perf_counter()

    def stop(self, phase: Phase) -> None:
        started = self._started().pop(phase, None)
        if started is None:
            return

        elapsed = time.perf_counter() - started
        with self.lock:
            self.totals[phase] += elapsed

    def messages(self) -> List[str]:
        with self.lock:
            return [f"Runtime for phase {p.value}: {self.totals[p]:.6f}s" for p in Phase]

    def report(self, outfile=sys.stderr) -> None:
        for m in self.messages():
            print(m, file=outfile)
