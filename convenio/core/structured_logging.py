"""Log context helpers. Only ids and routing data go in; never CPF, names or tokens."""

from typing import Any


def build_log_context(**fields: Any) -> dict[str, Any]:
    """
    Drop empty fields and stringify ids for the ``extra=`` of a log call.

    >>> build_log_context(user_id=7, role="cliente", request_id=None)
    {'user_id': '7', 'role': 'cliente'}
    """
    context = {key: value for key, value in fields.items() if value not in (None, "")}
    if "user_id" in context:
        context["user_id"] = str(context["user_id"])
    return context
