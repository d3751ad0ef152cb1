"""Controllable clock for grace-period tests."""

from datetime import timedelta

from pull_secret_core.db.db_base import utc_now


class MutableClock:
    """Callable returning a fixed UTC time until advanced."""

    def __init__(self, now=None):
        self.now = now or utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now
