"""CRUD 操作模块"""
from . import catalog, orders
from .catalog import (
    create_add_on,
    create_discount_code,
    create_product,
    get_discount_code,
    get_product,
    list_active_add_ons,
)
from .orders import (
    TransitionResult,
    append_attempt,
    set_preference_id,
)
from .orders import (
    create_with_items as create_order_with_items,
)
from .orders import (
    get as get_order,
)
from .orders import (
    transition_status as transition_order_status,
)

__all__ = [
    "catalog",
    "orders",
    "create_product",
    "create_add_on",
    "create_discount_code",
    "get_product",
    "get_discount_code",
    "list_active_add_ons",
    "TransitionResult",
    "append_attempt",
    "set_preference_id",
    "create_order_with_items",
    "get_order",
    "transition_order_status",
]
