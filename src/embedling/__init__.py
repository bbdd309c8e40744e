from .core import Batcher as Batcher
from .core import BatchResponse as BatchResponse
from .embedding import Embedder as Embedder
from .embedding import embed as embed
from .exceptions import APIError as APIError
from .exceptions import BatchFailedError as BatchFailedError
from .exceptions import EmbedlingError as EmbedlingError
from .exceptions import ItemTimeoutError as ItemTimeoutError
from .exceptions import PermanentFailureError as PermanentFailureError
from .exceptions import QueueFullError as QueueFullError
from .version import __version__ as __version__

__all__ = [
    "Batcher",
    "BatchResponse",
    "Embedder",
    "embed",
    "APIError",
    "BatchFailedError",
    "EmbedlingError",
    "ItemTimeoutError",
    "PermanentFailureError",
    "QueueFullError",
    "__version__",
]
