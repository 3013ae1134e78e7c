"""
Client address extraction.
"""
from starlette.requests import Request

_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")


def get_client_ip(request: Request) -> str:
    """
    Best guess at the originating client address.

    Trusts the first ``X-Forwarded-For`` hop, then ``X-Real-IP``, then
    ``CF-Connecting-IP``, then the socket peer.
    """
    for header in _FORWARDING_HEADERS:
        value = request.headers.get(header)
        if value:
            candidate = value.split(",")[0].strip()
            if candidate:
                return candidate

    if request.client and request.client.host:
        return request.client.host
    return "unknown"
