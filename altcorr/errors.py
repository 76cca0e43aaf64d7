class CorrelationError(RuntimeError):
    """ base class for altcorr failures """


class CorrelationInputError(CorrelationError, ValueError):
    """ inputs violate a precondition of forward / backward """


class BackendUnavailableError(CorrelationError):
    """ requested kernel backend cannot run on the given tensors """
