import logging
import re
import threading
import uuid
from contextlib import contextmanager

logger = logging.getLogger(__name__)

NO_REQUEST_ID = 'no-id'
# Accepted inbound ids; anything else is replaced so logs stay greppable
_REQUEST_ID_RE = re.compile(r'^[A-Za-z0-9._:-]{1,64}$')

_thread_locals = threading.local()


def get_current_request_id() -> str:
    return getattr(_thread_locals, 'request_id', NO_REQUEST_ID)


@contextmanager
def bind_request_id(request_id: str):
    """Tag log records emitted while the block runs; requests, scheduler ticks and worker threads all use this."""
    previous = get_current_request_id()
    _thread_locals.request_id = request_id
    try:
        yield request_id
    finally:
        _thread_locals.request_id = previous


class RequestIDFilter(logging.Filter):
    def filter(self, record):
        record.request_id = get_current_request_id()
        return True


class RequestIDMiddleware:
    header = 'X-Request-ID'

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        incoming = request.headers.get(self.header, '')
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else str(uuid.uuid4())
        if incoming and incoming != request_id:
            logger.debug(f"Discarded malformed {self.header} header")
        request.request_id = request_id

        with bind_request_id(request_id):
            response = self.get_response(request)
        response[self.header] = request_id
        return response
