"""Create archive, subfile, blob and audit tables

Revision ID: 3c1e7d2a9b40
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1e7d2a9b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'archives',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('download_token', sa.String(64), nullable=False),
        sa.Column('edit_token', sa.String(64), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_downloads', sa.Integer(), nullable=True),
        sa.Column('download_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_downloaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('blob_id', sa.String(64), nullable=False),
        sa.Column('key_material', sa.LargeBinary(), nullable=False),
        sa.Column('has_pruned_members', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('uploaded_by', sa.String(64), nullable=True),
    )
    op.create_index('ix_archives_id', 'archives', ['id'])
    op.create_index('ix_archives_download_token', 'archives', ['download_token'], unique=True)
    op.create_index('ix_archives_expiry_at', 'archives', ['expiry_at'], unique=False)

    op.create_table(
        'archive_subfiles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('archive_id', sa.Integer(), sa.ForeignKey('archives.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_token', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('path', sa.String(1024), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('mime_type', sa.String(255), nullable=False),
        sa.Column('extracted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('downloaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('archive_id', 'path', name='uq_archive_subfiles_path'),
    )
    op.create_index('ix_archive_subfiles_id', 'archive_subfiles', ['id'])
    op.create_index('ix_archive_subfiles_archive_id', 'archive_subfiles', ['archive_id'])
    op.create_index('ix_archive_subfiles_file_token', 'archive_subfiles', ['file_token'], unique=True)

    op.create_table(
        'archive_blobs',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('content', sa.LargeBinary(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_archive_blobs_created_at', 'archive_blobs', ['created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('resource_type', sa.String(32), nullable=False),
        sa.Column('resource_id', sa.String(1024), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('archive_blobs')
    op.drop_table('archive_subfiles')
    op.drop_table('archives')
