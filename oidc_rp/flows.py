"""
Response type / response mode policy.

The authorization request and the callback routes both depend on how the
identity provider is going to deliver its result. Rather than branching on raw
strings in several places, the supported combinations are modelled as two
closed enums and a single lookup that yields the routing policy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class ResponseType(str, Enum):
    CODE = "code"
    ID_TOKEN = "id_token"
    CODE_ID_TOKEN = "code id_token"
    NONE = "none"

    @classmethod
    def parse(cls, value: str) -> "ResponseType":
        """Accept space-separated values in any order ("id_token code")."""
        normalized = " ".join(sorted(value.split()))
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(
            f"Unsupported response_type: '{value}'. "
            f"Expected one of {[m.value for m in cls]}"
        )

    @property
    def includes_id_token(self) -> bool:
        return self in (ResponseType.ID_TOKEN, ResponseType.CODE_ID_TOKEN)

    @property
    def includes_code(self) -> bool:
        return self in (ResponseType.CODE, ResponseType.CODE_ID_TOKEN)


class ResponseMode(str, Enum):
    QUERY = "query"
    FRAGMENT = "fragment"
    FORM_POST = "form_post"


@dataclass(frozen=True)
class ResponseFlow:
    """
    Routing policy for one response_type/response_mode combination.

    Attributes:
        response_type: Configured response type
        response_mode: Mode sent to the IdP, or None to omit the parameter
        callback_methods: HTTP methods on which the callback handler runs
        repost_page: Whether GET /callback serves the fragment repost page
    """

    response_type: ResponseType
    response_mode: Optional[ResponseMode]
    callback_methods: FrozenSet[str]
    repost_page: bool

    @property
    def accepts_post(self) -> bool:
        return "POST" in self.callback_methods


_GET = frozenset({"GET"})
_POST = frozenset({"POST"})


def default_response_mode(response_type: ResponseType) -> Optional[ResponseMode]:
    """
    Response mode used when none was configured.

    Tokens in a URL fragment never reach the server, so an id_token-bearing
    response defaults to form_post. code/none leave it to the IdP (query).
    """
    if response_type.includes_id_token:
        return ResponseMode.FORM_POST
    return None


def resolve_response_flow(
    response_type: ResponseType,
    response_mode: Optional[ResponseMode],
) -> ResponseFlow:
    """
    Map an effective response_type/response_mode pair to its routing policy.

    ``response_mode`` here is the value that will actually be sent (already
    defaulted); None means the parameter is omitted and the IdP default
    applies: query for code/none, fragment for anything carrying an id_token.
    """
    if response_mode is ResponseMode.QUERY:
        return ResponseFlow(response_type, response_mode, _GET, repost_page=False)

    if response_mode is ResponseMode.FORM_POST:
        return ResponseFlow(
            response_type,
            response_mode,
            _POST,
            repost_page=response_type.includes_id_token,
        )

    if response_mode is ResponseMode.FRAGMENT or response_type.includes_id_token:
        # Fragment delivery: the browser reposts the fragment via the HTML page
        return ResponseFlow(response_type, response_mode, _POST, repost_page=True)

    return ResponseFlow(response_type, response_mode, _GET, repost_page=False)


__all__ = [
    "ResponseType",
    "ResponseMode",
    "ResponseFlow",
    "default_response_mode",
    "resolve_response_flow",
]
