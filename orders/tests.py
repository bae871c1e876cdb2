from decimal import Decimal

from django.test import TestCase

from .models import Order, OrderLine, Product
from .services import get_order, get_order_by_key, reduce_order_stock


class OrderStatusTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(total=Decimal("10.00"), status=Order.STATUS_ON_HOLD)

    def test_transition_records_note(self):
        changed = self.order.update_status(Order.STATUS_COMPLETED, "Paid.")

        self.assertTrue(changed)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_COMPLETED)
        note = self.order.notes.get()
        self.assertEqual(note.content, "Paid. Order status changed from on-hold to completed.")

    def test_same_status_is_noop(self):
        self.assertFalse(self.order.update_status(Order.STATUS_ON_HOLD, "again"))
        self.assertEqual(self.order.notes.count(), 0)

    def test_stale_instance_does_not_transition_twice(self):
        first = Order.objects.get(pk=self.order.pk)
        second = Order.objects.get(pk=self.order.pk)

        self.assertTrue(first.update_status(Order.STATUS_COMPLETED))
        self.assertFalse(second.update_status(Order.STATUS_COMPLETED))

        self.assertEqual(second.status, Order.STATUS_COMPLETED)
        self.assertEqual(self.order.notes.count(), 1)

    def test_update_meta_keeps_other_keys(self):
        self.order.update_meta("a", 1)
        self.order.update_meta("b", "x")
        self.order.refresh_from_db()
        self.assertEqual(self.order.metadata, {"a": 1, "b": "x"})
        self.assertEqual(self.order.get_meta("b"), "x")
        self.assertIsNone(self.order.get_meta("missing"))


class OrderLookupTests(TestCase):
    def test_get_order_accepts_string_ids(self):
        order = Order.objects.create(total=Decimal("1.00"))
        self.assertEqual(get_order(str(order.pk)), order)
        self.assertEqual(get_order(order.pk), order)

    def test_get_order_rejects_garbage(self):
        self.assertIsNone(get_order("abc"))
        self.assertIsNone(get_order(None))
        self.assertIsNone(get_order("999999"))

    def test_get_order_by_key(self):
        order = Order.objects.create(total=Decimal("1.00"))
        self.assertTrue(order.order_key.startswith("wc_order_"))
        self.assertEqual(get_order_by_key(order.order_key), order)
        self.assertIsNone(get_order_by_key(""))


class ReduceStockTests(TestCase):
    def setUp(self):
        self.managed = Product.objects.create(name="Mug", sku="MUG", price=Decimal("5"), manage_stock=True, stock_quantity=10)
        self.unmanaged = Product.objects.create(name="Ebook", sku="EBOOK", price=Decimal("3"))
        self.order = Order.objects.create(total=Decimal("13.00"), status=Order.STATUS_ON_HOLD)
        OrderLine.objects.create(order=self.order, product=self.managed, quantity=2, unit_price=Decimal("5"))
        OrderLine.objects.create(order=self.order, product=self.unmanaged, quantity=1, unit_price=Decimal("3"))

    def test_reduces_managed_stock_once(self):
        self.assertTrue(reduce_order_stock(self.order))
        self.assertFalse(reduce_order_stock(self.order))

        self.managed.refresh_from_db()
        self.unmanaged.refresh_from_db()
        self.assertEqual(self.managed.stock_quantity, 8)
        self.assertIsNone(self.unmanaged.stock_quantity)
        self.order.refresh_from_db()
        self.assertTrue(self.order.stock_reduced)
        self.assertIn("Mug (10→8)", self.order.notes.get().content)
