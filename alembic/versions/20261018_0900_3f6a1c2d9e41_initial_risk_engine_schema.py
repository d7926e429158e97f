"""Initial risk engine schema: portfolios, buckets, risk configs, positions, orders, ledger

Revision ID: 3f6a1c2d9e41
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '3f6a1c2d9e41'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    from core.database.models import Base
    from core.database import trading_models  # noqa: F401

    # Create all tables from the ORM metadata
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    """Downgrade schema."""
    from core.database.models import Base
    from core.database import trading_models  # noqa: F401

    Base.metadata.drop_all(bind=op.get_bind())
