"""Error taxonomy shared by the store, the services and the HTTP layer.

Every error knows the status code it is reported with, so route handlers can
let them propagate to the single error handler registered in ``app.py``.
"""


class VotingError(Exception):
    status_code = 500
    message = "Something went wrong"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {"error": self.message}


class AlreadyVoted(VotingError):
    status_code = 403
    message = "already voted"

    def __init__(self, voter_id=None):
        super().__init__()
        self.voter_id = voter_id


class InvalidBallot(VotingError):
    status_code = 400

    def __init__(self, message, constraint, **detail):
        super().__init__(message)
        self.constraint = constraint
        self.detail = detail

    def to_dict(self):
        body = {"error": self.message, "constraint": self.constraint}
        body.update(self.detail)
        return body


class StorageUnavailable(VotingError):
    status_code = 500
    message = "storage unavailable"

    def to_dict(self):
        return {"error": self.message, "retryable": True}


class VoterNotFound(VotingError):
    status_code = 404
    message = "voter not found"

    def __init__(self, voter_id=None):
        super().__init__()
        self.voter_id = voter_id


class NotFound(VotingError):
    status_code = 404
    message = "Not found"


class Conflict(VotingError):
    status_code = 409
    message = "Conflict"


class ValidationError(VotingError):
    status_code = 400
    message = "Invalid request"


class Unauthorized(VotingError):
    status_code = 401
    message = "Voter identity required"
