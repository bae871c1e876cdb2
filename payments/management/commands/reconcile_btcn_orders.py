import time
from datetime import timedelta
from django.core.management.base import BaseCommand
from django.utils import timezone
from orders.models import Order
from payments.conf import GATEWAY_ID
from payments.integrations.btcn import GatewayError
from payments.services import fetch_transaction, update_order_status


class Command(BaseCommand):
    help = "Poll the BTCN gateway for on-hold orders and complete the ones that were paid"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=1)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timedelta(minutes=opts["older_than_minutes"])
        qs = (
            Order.objects.filter(payment_method=GATEWAY_ID, status=Order.STATUS_ON_HOLD, updated_at__lt=cutoff)
            .order_by("updated_at")[:opts["max"]]
        )

        orders = list(qs)
        if not orders:
            self.stdout.write(self.style.SUCCESS("No on-hold BTCN orders to reconcile."))
            return

        completed = 0
        for o in orders:
            try:
                tx = fetch_transaction(o)
                if tx is None:
                    self.stdout.write(self.style.WARNING(f"Order {o.pk}: no gateway transaction found"))
                elif update_order_status(o, tx):
                    completed += 1
                    self.stdout.write(self.style.SUCCESS(f"Order {o.pk} -> completed ({tx.payment_id})"))
                else:
                    self.stdout.write(f"Order {o.pk}: transaction {tx.payment_id} is {tx.status}")
            except GatewayError as e:
                self.stdout.write(self.style.WARNING(f"Order {o.pk}: {e}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(orders)}, completed {completed} orders."))
