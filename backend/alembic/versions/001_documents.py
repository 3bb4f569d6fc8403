"""Create documents table for the tenant document store

Revision ID: 001_documents
Revises: None
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = '001_documents'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('path', sa.String(), nullable=False),
        sa.Column('collection_path', sa.String(), nullable=False),
        sa.Column('collection_id', sa.String(), nullable=False),
        sa.Column('doc_id', sa.String(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_documents_id', 'documents', ['id'])
    op.create_index('ix_documents_path', 'documents', ['path'], unique=True)
    op.create_index('ix_documents_collection_path', 'documents', ['collection_path'])
    op.create_index('ix_documents_collection_id', 'documents', ['collection_id'])


def downgrade():
    op.drop_index('ix_documents_collection_id', table_name='documents')
    op.drop_index('ix_documents_collection_path', table_name='documents')
    op.drop_index('ix_documents_path', table_name='documents')
    op.drop_index('ix_documents_id', table_name='documents')
    op.drop_table('documents')
