"""
Gzip support for request bodies.

Response compression is handled by Starlette's GZipMiddleware; this module
covers the other direction: clients may send bodies with
Content-Encoding: gzip, which are inflated before routing.
"""

import logging
import zlib

from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

# wbits for zlib to expect a gzip header and trailer
GZIP_WBITS = 16 + zlib.MAX_WBITS


class BodyTooLargeError(Exception):
    """The inflated body exceeds the configured limit."""


def decompress_body(body: bytes, content_encoding: str, max_size: int) -> bytes:
    """
    Inflate body if content_encoding names gzip, else return it unchanged.

    At most max_size + 1 bytes are ever inflated.

    Raises:
        zlib.error: if the body is not valid gzip data
        EOFError: if the gzip stream is truncated
        BodyTooLargeError: if the inflated body is larger than max_size
    """
    if "gzip" not in content_encoding.lower():
        return body

    decompressor = zlib.decompressobj(GZIP_WBITS)
    inflated = decompressor.decompress(body, max_size + 1)
    if len(inflated) > max_size:
        raise BodyTooLargeError(f"inflated body exceeds {max_size} bytes")
    if not decompressor.eof:
        raise EOFError("gzip stream is truncated")
    return inflated


class GzipRequestMiddleware:
    """
    ASGI middleware that decompresses gzip-encoded request bodies.

    The downstream app sees the inflated body with Content-Encoding removed
    and Content-Length updated. Undecodable bodies get a 400 response,
    bodies inflating past max_size a 413.
    """

    def __init__(self, app: ASGIApp, max_size: int = 1024 * 1024) -> None:
        self.app = app
        self.max_size = max_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        content_encoding = Headers(scope=scope).get("content-encoding", "")
        if "gzip" not in content_encoding.lower():
            await self.app(scope, receive, send)
            return

        chunks = []
        more_body = True
        while more_body:
            message = await receive()
            chunks.append(message.get("body", b""))
            more_body = message.get("more_body", False)

        try:
            body = decompress_body(b"".join(chunks), content_encoding, self.max_size)
        except BodyTooLargeError as e:
            logger.warning(f"Rejected gzip request body: {e}")
            response = JSONResponse({"detail": "request body too large"}, status_code=413)
            await response(scope, receive, send)
            return
        except (zlib.error, EOFError) as e:
            logger.warning(f"Rejected gzip request body: {e}")
            response = JSONResponse({"detail": "invalid gzip body"}, status_code=400)
            await response(scope, receive, send)
            return

        # Rewritten in place: the router records the matched route on this scope
        headers = [
            (key, value) for key, value in scope["headers"]
            if key not in (b"content-encoding", b"content-length")
        ]
        headers.append((b"content-length", str(len(body)).encode("latin-1")))
        scope["headers"] = headers

        body_sent = False

        async def receive_inflated() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, receive_inflated, send)
