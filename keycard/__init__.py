from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("keycard")
except PackageNotFoundError:
    # Package is not installed (e.g. during local development)
    __version__ = "0.4.0-local"

from .application.services.sequence_controller import SequenceController
from .domain.records import Booking, SequenceOutcome

__all__ = [
    "SequenceController",
    "Booking",
    "SequenceOutcome",
    "__version__",
]
