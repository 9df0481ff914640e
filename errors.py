"""Error taxonomy shared by the quiz core and the HTTP layer.

Core functions raise these; ``app.py`` turns them into the uniform
``{"success": False, "error": ...}`` payload so callers branch on the
result instead of catching exceptions.
"""


class QuizError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return self.args[0]


class InvalidRequest(QuizError):
    status_code = 400
    default_message = "Invalid request"


class NotAuthenticated(QuizError):
    status_code = 401
    default_message = "Not authenticated"


class ModuleLocked(QuizError):
    status_code = 403
    default_message = "Module locked"


class NotFound(QuizError):
    status_code = 404
    default_message = "Not found"


class InvalidState(QuizError):
    status_code = 409
    default_message = "Invalid state"


class EmptyContent(QuizError):
    status_code = 422
    default_message = "Module has no characters"
