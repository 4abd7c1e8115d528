# voteguard/operations/phase_sweeper.py

# Periodic pass that moves elections through their phases without waiting
# for a request, and refreshes results for elections whose voting just closed.

import logging
import threading
from typing import List

from voteguard.constants import ElectionPhase
from voteguard.elections.phases import PhaseChange

logger = logging.getLogger(__name__)


class PhaseSweeper:
    def __init__(self, app, phase_engine, result_engine=None, interval: int = 60):
        self.app = app
        self.phase_engine = phase_engine
        self.result_engine = result_engine
        self.interval = interval
        self._stop = threading.Event()
        self.worker = None

    def run_once(self) -> List[PhaseChange]:
        with self.app.app_context():
            changes = self.phase_engine.sweep()
            if self.result_engine is not None:
                for change in changes:
                    if change.phase == ElectionPhase.RESULTS.value:
                        self.result_engine.calculate(change.election_id, calculated_by='system', use_cache=False)
        if changes:
            logger.info(f"Phase sweep applied {len(changes)} change(s)")
        return changes

    def run_forever(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Phase sweep failed: {str(e)}")
            self._stop.wait(self.interval)

    def start(self):
        if self.worker is not None and self.worker.is_alive():
            return
        self._stop.clear()
        self.worker = threading.Thread(target=self.run_forever, name='phase-sweeper')
        self.worker.daemon = True
        self.worker.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self.worker is not None:
            self.worker.join(timeout=timeout)
