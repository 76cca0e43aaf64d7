from .config import cfg
from .correlation import corr, forward, backward, CorrLayer
from .errors import CorrelationError, CorrelationInputError, BackendUnavailableError
from .launch import LaunchConfig
