# backend/rx_cds/errors.py


class CDSError(Exception):
    """Base error carrying a machine-readable code for the API error envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"code": self.code, "message": self.message}


class LookupFailed(CDSError):
    """The reference store could not answer (connection, missing table, timeout)."""

    code = "LOOKUP_FAILED"


class ReferenceDataError(CDSError):
    """A reference row is missing a required column or holds an invalid value."""

    code = "INVALID_REFERENCE_DATA"


class InvalidDoseFormat(CDSError):
    code = "INVALID_DOSE_FORMAT"


class UnitConversionError(CDSError):
    code = "UNIT_CONVERSION_FAILED"


class NotFound(CDSError):
    code = "NOT_FOUND"
    status_code = 404
