from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class IntegrationCallError(RuntimeError):
    """Remote call reached the provider but did not succeed."""
