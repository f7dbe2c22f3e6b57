"""
Exceptions raised by the comparison engine.

Remote failures live in sitecompare.api.base; these cover the engine's own
contract with its caller.
"""


class ComparisonError(Exception):
    """Base class for comparison engine errors."""


class ConfigurationError(ComparisonError):
    """The task configuration is malformed; the run was never started."""


class AuthenticationError(ComparisonError):
    """No usable credentials could be obtained for a tenant."""

    def __init__(self, tenant_id: str, message: str = ""):
        self.tenant_id = tenant_id
        super().__init__(message or f"No valid credentials for tenant {tenant_id}")
