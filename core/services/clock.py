"""
Clock abstraction so services can be run against a fixed time in tests.
"""
from django.utils import timezone


class SystemClock:
    """Wall clock in UTC."""

    def now(self):
        return timezone.now()


class FixedClock:
    """Clock frozen at a given aware datetime; advance() moves it forward."""

    def __init__(self, at):
        self._at = at

    def now(self):
        return self._at

    def advance(self, delta):
        self._at = self._at + delta
        return self._at
