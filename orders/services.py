import logging

from django.db import transaction
from django.db.models import F

from .models import Order, Product

logger = logging.getLogger(__name__)


def get_order(order_id) -> Order | None:
    """Look up an order by its id, accepting the id as int or string."""
    try:
        pk = int(str(order_id).strip())
    except (TypeError, ValueError):
        return None
    return Order.objects.filter(pk=pk).first()


def get_order_by_key(order_key: str | None) -> Order | None:
    if not order_key:
        return None
    return Order.objects.filter(order_key=order_key).first()


@transaction.atomic
def reduce_order_stock(order: Order) -> bool:
    locked = Order.objects.select_for_update().get(pk=order.pk)
    if locked.stock_reduced:
        return False  # idempotent

    changes = []
    for line in locked.lines.select_related("product"):
        product = line.product
        if not product.manage_stock or product.stock_quantity is None:
            continue
        Product.objects.filter(pk=product.pk).update(stock_quantity=F("stock_quantity") - line.quantity)
        product.refresh_from_db(fields=["stock_quantity"])
        changes.append(f"{product.name} ({product.stock_quantity + line.quantity}→{product.stock_quantity})")

    locked.stock_reduced = True
    locked.save(update_fields=["stock_reduced", "updated_at"])
    order.stock_reduced = True

    if changes:
        locked.add_note("Stock levels reduced: " + ", ".join(changes))
    logger.info("Stock reduced for order %s (%d lines changed)", order.pk, len(changes))
    return True
