from django.conf import settings
from django.db import models
from django.utils import timezone

from .utils import generate_order_key


class Product(models.Model):
    name = models.CharField(max_length=200)
    sku = models.CharField(max_length=64, unique=True)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    manage_stock = models.BooleanField(default=False)
    stock_quantity = models.IntegerField(null=True, blank=True)

    def __str__(self):
        return f"{self.name} ({self.sku})"


class Order(models.Model):
    STATUS_PENDING = "pending"
    STATUS_ON_HOLD = "on-hold"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_CANCELLED = "cancelled"
    STATUS_FAILED = "failed"
    STATUS_REFUNDED = "refunded"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending payment"),
        (STATUS_ON_HOLD, "On hold"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_FAILED, "Failed"),
        (STATUS_REFUNDED, "Refunded"),
    ]

    order_key = models.CharField(max_length=64, unique=True, default=generate_order_key)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL, related_name="orders"
    )
    billing_email = models.EmailField(blank=True, default="")

    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="BTCN")
    payment_method = models.CharField(max_length=32, blank=True, default="")

    metadata = models.JSONField(default=dict, blank=True)
    stock_reduced = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def has_status(self, *statuses) -> bool:
        return self.status in statuses

    def get_meta(self, key, default=None):
        return (self.metadata or {}).get(key, default)

    def update_meta(self, key, value) -> None:
        meta = dict(self.metadata or {})
        meta[key] = value
        self.metadata = meta
        self.save(update_fields=["metadata", "updated_at"])

    def add_note(self, content: str, is_customer_note: bool = False) -> "OrderNote":
        return OrderNote.objects.create(order=self, content=content, is_customer_note=is_customer_note)

    def update_status(self, new_status: str, note: str = "") -> bool:
        """Move the order to ``new_status`` and record the transition.

        The write is conditional on the status this instance last saw, so
        two requests racing on the same transition only apply it once.
        Returns True when this call performed the transition.
        """
        old_status = self.status
        if old_status == new_status:
            return False
        changed = Order.objects.filter(pk=self.pk, status=old_status).update(
            status=new_status, updated_at=timezone.now()
        )
        if not changed:
            self.refresh_from_db(fields=["status", "updated_at"])
            return False
        self.status = new_status
        self.add_note(f"{note} Order status changed from {old_status} to {new_status}.".strip())
        return True

    def __str__(self):
        return f"Order #{self.pk} ({self.status})"


class OrderLine(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="lines")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="order_lines")
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)

    def __str__(self):
        return f"{self.quantity} x {self.product.sku}"


class OrderNote(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="notes")
    content = models.TextField()
    is_customer_note = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self):
        return self.content[:60]
