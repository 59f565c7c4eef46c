import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from order_service.errors import DuplicateTransactionError, OrderNotFound, ValidationError
from order_service.models import Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderStore:
    """Persistence for orders keyed by the gateway's transaction id.

    The unique index on ``orders.external_id`` is what guarantees at most one
    order per transaction; callers may check first, but only the insert decides.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_by_external_id(self, external_id: str) -> Optional[Order]:
        return self.db.query(Order).filter_by(external_id=external_id).first()

    def get(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def insert(self, order: Order) -> Order:
        self.db.add(order)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            # only a committed row for the same transaction counts as a duplicate
            if self.find_by_external_id(order.external_id) is None:
                raise
            logger.info(
                "Order insert lost the race for transaction",
                extra={"external_id": order.external_id},
            )
            raise DuplicateTransactionError() from exc
        self.db.refresh(order)
        return order

    def update_status(self, order_id: int, new_status: str) -> Order:
        try:
            status = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {new_status!r}")

        order = self.get(order_id)
        if order is None:
            raise OrderNotFound()

        order.status = status.value
        self.db.commit()
        self.db.refresh(order)
        return order

    def list_for_buyer(self, buyer_id: str) -> List[Order]:
        return (
            self.db.query(Order)
            .filter_by(buyer_id=buyer_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def list_all(self, status: Optional[str] = None) -> List[Order]:
        query = self.db.query(Order)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Order.created_at.desc(), Order.id.desc()).all()
