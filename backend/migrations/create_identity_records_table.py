"""
Create Identity Records Table Migration

Creates the identity_records table kept in sync with the identity provider.
Constraint names are referenced by the identity service when it classifies
uniqueness violations, so keep them stable.
"""

import asyncio
import logging

from sqlalchemy import text

from database.connection import get_engine, dispose_engine

logger = logging.getLogger(__name__)


STATEMENTS = [
    # Create identity records table
    """
    CREATE TABLE IF NOT EXISTS public.identity_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),

        -- Provider correlation
        external_id VARCHAR(255),

        -- Profile (email stored trimmed and lower-cased)
        email VARCHAR(320) NOT NULL,
        display_name VARCHAR(255),
        avatar_ref TEXT,

        -- Access
        role VARCHAR(20) NOT NULL DEFAULT 'standard',

        -- Audit
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),

        CONSTRAINT uq_identity_records_external_id UNIQUE (external_id),
        CONSTRAINT uq_identity_records_email UNIQUE (email),
        CONSTRAINT ck_identity_records_role CHECK (role IN ('standard', 'vendor', 'admin'))
    );
    """,

    # Legacy role vocabulary
    """
    UPDATE public.identity_records SET role = 'standard' WHERE role = 'user';
    """,

    """
    CREATE INDEX IF NOT EXISTS idx_identity_records_role ON public.identity_records(role);
    """,

    """
    COMMENT ON TABLE public.identity_records IS 'People known to the identity provider, one row per email';
    """,
]


async def create_identity_records_table():
    """Create identity_records. Any failing statement aborts the migration."""
    async with get_engine().begin() as conn:
        logger.info("Creating identity_records table...")
        for i, stmt in enumerate(STATEMENTS):
            await conn.execute(text(stmt))
            logger.info(f"Statement {i + 1}/{len(STATEMENTS)} executed")

    logger.info("identity_records table ready")
    await dispose_engine()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(create_identity_records_table())
