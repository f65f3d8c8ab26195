"""Tax rate lookup from the tax configuration table."""
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.models.tax_configuration import TaxConfiguration

logger = structlog.get_logger(__name__)


class TaxService:
    """
    Service for resolving the tax rate applied to invoices.

    Resolution order: active row for the jurisdiction, then the active
    default row, then zero.
    """

    def __init__(self, db: AsyncSession):
        """Initialize tax service with database session."""
        self.db = db

    async def get_tax_rate(self, jurisdiction: Optional[str] = None) -> Decimal:
        """
        Get the tax rate for a jurisdiction.

        Args:
            jurisdiction: ISO country code, or None for the default

        Returns:
            Tax rate as decimal (e.g., 0.05 for 5%)
        """
        if jurisdiction:
            result = await self.db.execute(
                select(TaxConfiguration)
                .where(
                    TaxConfiguration.jurisdiction == jurisdiction.upper(),
                    TaxConfiguration.is_active.is_(True),
                )
                .order_by(TaxConfiguration.created_at.desc())
                .limit(1)
            )
            config = result.scalar_one_or_none()
            if config:
                return Decimal(config.tax_rate)

        result = await self.db.execute(
            select(TaxConfiguration)
            .where(
                TaxConfiguration.is_default.is_(True),
                TaxConfiguration.is_active.is_(True),
            )
            .order_by(TaxConfiguration.created_at.desc())
            .limit(1)
        )
        config = result.scalar_one_or_none()
        if config:
            return Decimal(config.tax_rate)

        logger.info("tax_rate_not_configured", jurisdiction=jurisdiction)
        return Decimal("0")
