"""Pipeline rejections surfaced to beacon senders."""

from fastapi import HTTPException


class BeaconRejected(HTTPException):
    """A beacon the pipeline refuses. Rendered as {"detail": {"error": code, ...}}."""

    def __init__(self, status_code: int, code: str, message: str, **extra):
        self.code = code
        super().__init__(
            status_code=status_code,
            detail={"error": code, "message": message, **extra},
        )
