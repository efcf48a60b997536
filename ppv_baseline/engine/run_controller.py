import logging
import threading
from typing import Callable, Iterable, Mapping, Optional

import numpy as np

from ppv_baseline.engine.audit import log_step, start_audit
from ppv_baseline.engine.cube_api import BatchResult, Cube, ReceptorSeries
from ppv_baseline.engine.errors import ReductionCancelled
from ppv_baseline.engine.pipeline import run_observation
from ppv_baseline.engine.recipe_model import Recipe, ReductionConfig

logger = logging.getLogger(__name__)


class BatchRunner:
    """Runs one observation with progress reporting and cooperative cancel.

    Cancellation is checked between tiles and receptors only; a kernel
    call that has started always finishes.
    """

    def __init__(self, tiles: Mapping[str, Cube], recipe, *, series: Iterable[ReceptorSeries] = (),
                 moment_maps: Optional[Mapping[str, np.ndarray]] = None,
                 on_progress: Optional[Callable[[int], None]] = None,
                 on_message: Optional[Callable[[str], None]] = None):
        self.tiles = dict(tiles)
        self.recipe = recipe
        self.series = list(series)
        self.moment_maps = dict(moment_maps or {})
        self._on_progress = on_progress
        self._on_message = on_message
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.result: Optional[BatchResult] = None
        self.error: Optional[BaseException] = None

    def run(self) -> BatchResult:
        self._emit_message("Validating recipe...")
        config = self._resolve(self.recipe)
        audit = start_audit(getattr(self.recipe, "module", None))
        self._emit_progress(10)

        self._raise_if_cancelled()
        self._emit_message("Reducing observation...")
        result = run_observation(
            self.tiles,
            config,
            series=self.series,
            moment_maps=self.moment_maps,
            cancel_check=self._raise_if_cancelled,
            progress=self._stage_progress,
            audit=audit,
        )
        log_step(audit, "Batch complete")
        self._emit_progress(100)
        self.result = result
        return result

    def start(self) -> threading.Thread:
        def _target():
            try:
                self.run()
            except ReductionCancelled as exc:
                logger.warning("Reduction cancelled")
                self.error = exc
            except Exception as exc:
                logger.exception("Reduction failed: %s", exc)
                self.error = exc

        self._thread = threading.Thread(target=_target, name="ppv-baseline-batch", daemon=True)
        self._thread.start()
        return self._thread

    def wait(self, timeout: Optional[float] = None) -> Optional[BatchResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    def cancel(self) -> bool:
        if self._cancel_event.is_set():
            return False
        self._cancel_event.set()
        self._emit_message("Cancellation requested")
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _raise_if_cancelled(self):
        if self._cancel_event.is_set():
            raise ReductionCancelled()

    @staticmethod
    def _resolve(recipe) -> ReductionConfig:
        if isinstance(recipe, ReductionConfig):
            return recipe
        if isinstance(recipe, Recipe):
            return recipe.resolve()
        if isinstance(recipe, Mapping):
            return Recipe.from_mapping(recipe).resolve()
        raise TypeError(f"Unsupported recipe type {type(recipe).__name__}")

    def _stage_progress(self, stage: str, done: int, total: int):
        # receptors cover 10-40%, tiles 40-100%
        if total <= 0:
            return
        if stage == "receptors":
            self._emit_progress(10 + int(30 * done / total))
        else:
            self._emit_progress(40 + int(60 * done / total))
        self._emit_message(f"{stage}: {done}/{total}")

    def _emit_progress(self, value: int):
        if self._on_progress is not None:
            self._on_progress(int(value))

    def _emit_message(self, message: str):
        logger.info(message)
        if self._on_message is not None:
            self._on_message(message)


def run_batch(tiles: Mapping[str, Cube], recipe, **kwargs) -> BatchResult:
    return BatchRunner(tiles, recipe, **kwargs).run()

