from __future__ import annotations


class GalleryError(Exception):
    # Base error; `code` is picked up by the app-wide error handler
    code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(GalleryError):
    code = 404


class BadRequestError(GalleryError):
    code = 400


class SearchQueryError(GalleryError):
    """
    Raised by the search capability for a query it cannot run
    (bad paging, unknown sort key/order, oversized text).
    The lookup resolver turns it into a BadRequestError.
    """

    code = 400
