class MalformedRecordError(ValueError):
    """A single input record is missing required fields or has invalid values."""

    def __init__(self, message: str, record_id=None):
        super().__init__(message)
        self.record_id = record_id
