"""Errors raised to callers of the analytics core.

Only caller mistakes surface as exceptions. Transport and persistence
failures are logged and swallowed at the engine boundary.
"""


class LeadLensError(Exception):
    """Base class for analytics core errors."""


class FunnelNotFoundError(LeadLensError, LookupError):
    def __init__(self, funnel_name: str):
        self.funnel_name = funnel_name
        super().__init__(f"Funnel {funnel_name} not found")


class TestNotFoundError(LeadLensError, LookupError):
    __test__ = False  # keep pytest from collecting this class

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"A/B test {test_id} not found")


class InvalidTestDefinitionError(LeadLensError, ValueError):
    """A/B test definition rejected at creation time."""


class InvalidTestTransitionError(LeadLensError, ValueError):
    """Status change not allowed from the test's current status."""

    def __init__(self, test_id: str, current: str, requested: str):
        self.test_id = test_id
        self.current = current
        self.requested = requested
        super().__init__(f"A/B test {test_id} cannot move from {current} to {requested}")
