"""Error taxonomy shared by the services and the HTTP layer."""


class DonorStreakError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': type(self).__name__, 'message': self.message}


class ValidationError(DonorStreakError):
    """Bad form input; the caller should re-prompt."""
    status_code = 400


class Unauthenticated(DonorStreakError):
    status_code = 401


class PermissionDenied(DonorStreakError):
    status_code = 403


class NotFound(DonorStreakError):
    status_code = 404


class InvalidTransition(DonorStreakError):
    """The record is not in the status the transition starts from."""
    status_code = 409


class LimitExceeded(DonorStreakError):
    status_code = 409

    def __init__(self, message, year, retry_after, retry_message=None):
        super().__init__(message)
        self.year = year
        self.retry_after = retry_after
        self.retry_message = retry_message

    def to_dict(self):
        data = super().to_dict()
        data['year'] = self.year
        data['retry_after_seconds'] = int(self.retry_after.total_seconds())
        data['retry_message'] = self.retry_message
        return data


class InsufficientStreaks(DonorStreakError):
    status_code = 409


class PartialFailure(DonorStreakError):
    """Appointment was written but no donation could be marked used."""
    status_code = 502

    def __init__(self, message, appointment_id, donation_id=None):
        super().__init__(message)
        self.appointment_id = appointment_id
        self.donation_id = donation_id

    def to_dict(self):
        data = super().to_dict()
        data['appointment_id'] = self.appointment_id
        data['donation_id'] = self.donation_id
        return data


class RepositoryError(DonorStreakError):
    """The document store failed; safe to retry with the same record ids."""
    status_code = 503
