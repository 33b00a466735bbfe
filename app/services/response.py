def list_response(items: list, limit: int, offset: int, total: int | None = None) -> dict:
    payload = {"items": items, "count": len(items), "limit": limit, "offset": offset}
    if total is not None:
        payload["total"] = total
        payload["has_more"] = offset + len(items) < total
    return payload


def envelope(data=None, message: str | None = None) -> dict:
    payload: dict = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    return payload


class ListResponseMixin:
    @classmethod
    def list_response(cls, db, *args, **kwargs):
        if "limit" in kwargs and "offset" in kwargs:
            limit = kwargs.pop("limit")
            offset = kwargs.pop("offset")
            list_args = list(args)
        else:
            if len(args) < 2:
                raise ValueError("limit and offset are required for list responses")
            *list_args, limit, offset = args
        items = cls.list(db, *list_args, limit=limit, offset=offset, **kwargs)
        total = None
        if hasattr(cls, "count"):
            total = cls.count(db, *list_args, **kwargs)
        return list_response(items, limit, offset, total)
