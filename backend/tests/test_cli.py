from datetime import timedelta
from decimal import Decimal

from storefront.extensions import db
from storefront.models import Payment
from storefront.services import inventory_service, payment_service
from storefront.services.order_service import CartLine, place_order
from storefront.time_utils import utcnow


def test_release_reservations_command(app, make_product):
    a = make_product("A", "1.00", stock=5)
    inventory_service.reserve(a.id, None, 2)

    result = app.test_cli_runner().invoke(args=["maintenance", "release-reservations", "--older-than-seconds=-1"])

    assert result.exit_code == 0, result.output
    assert "Released 1 expired reservation(s)." in result.output
    assert inventory_service.get_quantity(a.id) == 5


def test_expire_payments_command(app, customer, make_product):
    a = make_product("A", "1.00", stock=5)
    order = place_order(customer.id, [CartLine(a.id, 1)])
    payment = payment_service.record_attempt(order.id, "manual", Decimal("1.00"))
    db.session.get(Payment, payment.id).created_at = utcnow() - timedelta(days=1)
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["maintenance", "expire-payments"])

    assert result.exit_code == 0, result.output
    assert "Expired 1 stale payment(s)." in result.output


def test_init_db_command(app, db_session):
    result = app.test_cli_runner().invoke(args=["maintenance", "init-db"])

    assert result.exit_code == 0, result.output
    assert "PASS" in result.output
