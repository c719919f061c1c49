"""Exceptions raised by pedtrack.

Recoverable per-frame outcomes (nothing recognized, tracking miss) are not
errors: they show up as empty lists, ``None`` or ``-1`` return values.
"""


class PedTrackError(Exception):
    pass


class NotCalibratedError(PedTrackError, RuntimeError):
    """A 3D query was made before the extrinsic calibration was set."""


class CalibrationError(PedTrackError, ValueError):
    """Degenerate geometry or unusable calibration input."""


class TrcFormatError(PedTrackError, ValueError):
    def __init__(self, message, path=None, line=None):
        self.path = path
        self.line = line
        where = ""
        if path is not None:
            where = f"{path}"
            if line is not None:
                where += f":{line}"
            where += ": "
        super().__init__(f"{where}{message}")


class ImportDataError(PedTrackError, ValueError):
    def __init__(self, message, person=None, frame=None):
        self.person = person
        self.frame = frame
        super().__init__(message)


class AmbiguousSelectionError(PedTrackError, LookupError):
    """More than one trajectory matches a picking query equally well."""

    def __init__(self, candidates):
        self.candidates = list(candidates)
        super().__init__(f"too many matches: persons {[c + 1 for c in self.candidates]}")


class RecognitionConfigError(PedTrackError, ValueError):
    pass
