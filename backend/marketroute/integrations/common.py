from __future__ import annotations


class IntegrationMisconfiguredError(RuntimeError):
    pass
