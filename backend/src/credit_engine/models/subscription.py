"""Package and subscription models."""
import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Uuid, text
from sqlalchemy.orm import relationship

from credit_engine.models.base import Base, enum_column_type


class PackageTier(enum.Enum):
    FREE = "free"
    PAID = "paid"


class BillingCycle(enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(enum.Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


class Package(Base):
    """Subscription package with included credits."""

    __tablename__ = "packages"

    name = Column(String, nullable=False)
    tier = Column(enum_column_type(PackageTier), nullable=False, index=True)
    monthly_price = Column(Integer, nullable=False, default=0)  # Minor units
    yearly_price = Column(Integer, nullable=True)  # Defaults to 12 x monthly
    currency = Column(String(3), nullable=False, default="USD")
    credits_included = Column(Numeric(14, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    def price_for(self, cycle: BillingCycle) -> int:
        if cycle == BillingCycle.YEARLY:
            return self.yearly_price if self.yearly_price is not None else self.monthly_price * 12
        return self.monthly_price

    def __repr__(self) -> str:
        """String representation."""
        return f"<Package(name={self.name}, tier={self.tier.value}, monthly_price={self.monthly_price})>"


class Subscription(Base):
    """
    A user's package subscription.

    At most one ACTIVE subscription per user, free or paid.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    user_id = Column(Uuid, nullable=False, index=True)
    package_id = Column(Uuid, ForeignKey("packages.id"), nullable=False)
    purchase_id = Column(Uuid, ForeignKey("purchases.id"), nullable=True)
    status = Column(enum_column_type(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    billing_cycle = Column(enum_column_type(BillingCycle), nullable=False, default=BillingCycle.MONTHLY)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    auto_renew = Column(Boolean, nullable=False, default=True)
    canceled_at = Column(DateTime, nullable=True)

    package = relationship("Package", lazy="selectin")

    def __repr__(self) -> str:
        """String representation."""
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status={self.status.value})>"
