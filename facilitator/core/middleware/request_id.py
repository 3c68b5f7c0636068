import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from facilitator.core.logging import latency_bucket_ms, request_id_ctx_var

# Caller-supplied ids are echoed into logs and headers, so keep them tame
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate every request with an id and log its completion.

    The completion record notes whether the request carried a payment proof,
    which separates challenge rounds from settlement rounds in the logs.
    """

    def __init__(self, app, header_name: str = "x-request-id", proof_header: str = "x-payment"):
        super().__init__(app)
        self.header_name = header_name
        self.proof_header = proof_header

    def _resolve(self, incoming):
        if incoming and _SAFE_REQUEST_ID.match(incoming):
            return incoming
        return str(uuid4())

    async def dispatch(self, request, call_next):
        rid = self._resolve(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        logging.getLogger("facilitator").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "payment_proof": self.proof_header in request.headers,
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
