from typing import Any, Optional

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class APIResponse:
    """
    Success envelope shared by every endpoint.

    Errors never go through here; they are raised as APIError and rendered by
    ``billing.validation.api_exceptions.custom_exception_handler``.
    """

    @staticmethod
    def success(
        data: Any = None,
        message: str = "Success",
        status_code: int = 200,
        meta: Optional[dict] = None,
    ) -> Response:
        body = {"success": True, "message": message}
        if data is not None:
            body["data"] = data
        if meta:
            body["meta"] = meta
        return Response(body, status=status_code)

    @classmethod
    def paginated(cls, data: Any, paginator: PageNumberPagination, message: str = "Success") -> Response:
        page = paginator.page
        return cls.success(
            data=data,
            message=message,
            meta={
                "pagination": {
                    "page": page.number,
                    "page_size": page.paginator.per_page,
                    "total": page.paginator.count,
                    "total_pages": page.paginator.num_pages,
                    "next": paginator.get_next_link(),
                    "previous": paginator.get_previous_link(),
                }
            },
        )
