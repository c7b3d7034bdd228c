class OpsRouterError(Exception):
    pass


class ProviderRegistrationError(OpsRouterError):
    """A provider with the same id is already registered."""


class ProviderNotFoundError(OpsRouterError):
    """No provider with the given id is registered."""


class CompletionError(OpsRouterError):
    """The completion endpoint could not produce text."""


class AnalysisParseError(OpsRouterError):
    """Model output could not be turned into a command analysis."""
