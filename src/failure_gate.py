from __future__ import annotations


class ConsecutiveFailureGate:
    """Tracks consecutive failures so a single flake after good data stays hidden."""

    def __init__(self) -> None:
        self.streak = 0

    def record_success(self) -> None:
        self.streak = 0

    def reset(self) -> None:
        self.streak = 0

    def should_surface_error(self, had_prior_data: bool) -> bool:
        """Return True when the failure should be shown to the user."""
        self.streak += 1
        if had_prior_data and self.streak == 1:
            return False
        return True
