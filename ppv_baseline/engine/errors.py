"""Exception types raised by the reduction engine."""

from __future__ import annotations

from typing import Iterable, List


class ConfigurationError(ValueError):
    """Raised when a recipe contains invalid or contradictory options."""

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = [str(err) for err in errors]
        super().__init__("; ".join(self.errors) or "Invalid configuration")


class InsufficientDataError(RuntimeError):
    """Raised when too few spectra are available for a statistical stage."""

    def __init__(self, stage: str, available: int, required: int):
        self.stage = stage
        self.available = int(available)
        self.required = int(required)
        super().__init__(
            f"{stage}: {self.available} spectra available, {self.required} required"
        )


class DegenerateMaskError(ValueError):
    """Raised when an emission mask leaves no emission-free voxels."""


class KernelError(RuntimeError):
    """Irrecoverable failure inside an array kernel call."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")


class BackgroundFitError(KernelError):
    """A local smoothing window contained no usable data."""


class StepCorrectionRejected(RuntimeError):
    """The step detector declined to correct a profile."""


class ReductionCancelled(RuntimeError):
    """Raised between tiles or receptors once cancellation is requested."""

    def __init__(self) -> None:
        super().__init__("Cancelled")
