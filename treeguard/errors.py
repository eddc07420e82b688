class GameError(Exception):
    """Base error. ``code`` is the snake_case key returned to clients."""

    status = 400
    code = "error"

    def __init__(self, code: str | None = None, message: str = "") -> None:
        if code:
            self.code = code
        self.message = message or self.code.replace("_", " ")
        super().__init__(self.message)


class ValidationError(GameError):
    status = 400
    code = "invalid"


class NotFoundError(GameError):
    status = 404
    code = "not_found"


class ConflictError(GameError):
    status = 409
    code = "conflict"


class TransientError(GameError):
    status = 503
    code = "unavailable"
