from quotabar.models import ProviderIdentifier

# raw upstream text attached to parse failures is cut to this length
_CONTEXT_LIMIT = 500


class FetchError(Exception):
    """
    FetchError is the base of every failure a provider's fetch()
    may raise. The scheduler decides how each kind degrades.
    """

    kind: "str" = "fetch"

    def __init__(
        self,
        provider: "ProviderIdentifier",
        message: "str",
        context: "str" = "",
    ) -> "None":
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.context = context[:_CONTEXT_LIMIT]

    def __str__(self) -> "str":
        return f"{self.provider.value}: {self.message}"


class ConfigurationError(FetchError):
    """
    missing credential or binary. Fatal to the provider.
    """

    kind = "configuration"


class NotAuthenticated(FetchError):
    kind = "not_authenticated"


class NoAccountIdentifier(FetchError):
    kind = "no_account_identifier"


class ParseError(FetchError):
    """
    upstream text or JSON did not have the expected shape.
    field names the value that could not be read.
    """

    kind = "parse"

    def __init__(
        self,
        provider: "ProviderIdentifier",
        message: "str",
        context: "str" = "",
        field: "str" = "",
    ) -> "None":
        super().__init__(provider, message, context)
        self.field = field


class TransportError(FetchError):
    kind = "transport"


class FetchTimeout(TransportError):
    kind = "timeout"


class TextParseError(ValueError):
    """
    raised by the text extraction helpers, which know nothing of
    providers. Providers rewrap it as ParseError.
    """

    def __init__(self, field: "str", message: "str", raw: "str" = "") -> "None":
        super().__init__(message)
        self.field = field
        self.raw = raw
