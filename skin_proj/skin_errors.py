from __future__ import annotations


class EmptyInputError(ValueError):
    """Raised when a reconstruction is requested for a point sequence with no points."""


class NoSeedFoundError(RuntimeError):
    """No valid cell exists to start region growing from.

    Only ``surface_grow.find_seed`` raises this; ``grow_fitted_surface`` catches it and
    falls back to returning its input unchanged.
    """


class ReconstructionCancelled(RuntimeError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"Reconstruction cancelled before stage '{stage}'")
        self.stage = stage
