"""Initial Remonta schema.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op

from app.remonta.models import Base


# revision identifiers, used by Alembic.
revision: str = "a0b1c2d3e4f5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Baseline: every table as declared on the models at this revision.
    # Later revisions must use explicit op.* calls.
    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
