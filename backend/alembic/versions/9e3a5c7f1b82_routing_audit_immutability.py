"""routing_audit_immutability

Revision ID: 9e3a5c7f1b82
Revises: 4b7e1d2c9a30
Create Date: 2026-09-14 09:30:05.402117

Enforce append-only semantics on routing_policy_audits at the DB level:
- Revoke UPDATE and DELETE from PUBLIC
- Grant SELECT and INSERT only
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '9e3a5c7f1b82'
down_revision: Union[str, None] = '4b7e1d2c9a30'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("REVOKE UPDATE, DELETE ON routing_policy_audits FROM PUBLIC;")
    op.execute("GRANT SELECT, INSERT ON routing_policy_audits TO PUBLIC;")


def downgrade() -> None:
    # Disaster recovery only
    op.execute("GRANT UPDATE, DELETE ON routing_policy_audits TO PUBLIC;")
