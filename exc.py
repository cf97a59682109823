class ApplicationError(Exception):
    pass


class ProviderError(ApplicationError):
    pass


class MutationError(ApplicationError):
    """The pod could not be mutated. Reported to the API server, never fatal."""
