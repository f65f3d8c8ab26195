"""Tax configuration model."""
from sqlalchemy import Boolean, Column, Numeric, String

from credit_engine.models.base import Base


class TaxConfiguration(Base):
    """Tax rate per jurisdiction, with one row flagged as the default."""

    __tablename__ = "tax_configurations"

    jurisdiction = Column(String, nullable=True, index=True)  # ISO country code, None for the default row
    tax_rate = Column(Numeric(6, 4), nullable=False)  # 0.0500 = 5%
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<TaxConfiguration(jurisdiction={self.jurisdiction}, rate={self.tax_rate}, default={self.is_default})>"
