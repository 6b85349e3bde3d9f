from typing import Any, Dict, Tuple
from urllib.parse import urlencode

from fastapi import Request

from escrow.providers.base import parse_raw_payload


async def extract_params(request: Request) -> Tuple[Dict[str, Any], bytes, str]:
    """
    Providers post callbacks as JSON, as form bodies, or only as a query
    string (browser returns). Flatten all of them into one dict; body fields
    win over query fields with the same name.

    Returns (params, raw_body, content_type).
    """
    content_type = request.headers.get("content-type", "") or ""
    params: Dict[str, Any] = dict(request.query_params)
    raw = b""
    if request.method in ("POST", "PUT"):
        raw = await request.body()
        params.update(parse_raw_payload(raw, content_type))
    return params, raw, content_type


def forwardable_query(params: Dict[str, Any]) -> str:
    """Scalar params only, so the result page sees what the provider sent."""
    flat = {k: v for k, v in params.items() if isinstance(v, (str, int, float, bool)) and v is not None}
    return urlencode(flat)
