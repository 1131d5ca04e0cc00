"""
core/errors.py -- Exceptions shared across layers.

Expected authentication outcomes (wrong password, bad MFA code, reused
refresh token) are NOT exceptions -- they are AuthFailure results defined in
auth/models.py. Only conditions the caller cannot reasonably branch on live
here.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""


class StoreUnavailable(Exception):
    """The backing store could not complete an operation (transient).

    Raised after idempotent reads exhaust their retries, or immediately when a
    mutating operation hits an operational error. The API layer maps this to
    HTTP 503.
    """

    def __init__(self, operation: str, message: str = "Store temporarily unavailable.") -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
