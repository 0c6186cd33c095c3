"""create_lending_tables

Revision ID: 20261019_0900_lending
Revises: None
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_0900_lending'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create members, books and loans.
    """
    op.create_table(
        'members',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('address', sa.String(length=500), nullable=True),
        sa.Column('phone_number', sa.String(length=50), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table(
        'books',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=True),
        sa.Column('isbn', sa.String(length=20), nullable=True),
        sa.Column('total_copies', sa.Integer(), server_default='0', nullable=False),
        sa.Column('available_copies', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('isbn'),
        sa.CheckConstraint('total_copies >= 0', name='ck_books_total_copies_non_negative'),
        sa.CheckConstraint('available_copies >= 0', name='ck_books_available_copies_non_negative'),
        sa.CheckConstraint('available_copies <= total_copies', name='ck_books_available_within_total')
    )

    op.create_table(
        'loans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('member_id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('borrow_date', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('return_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['member_id'], ['members.id']),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'])
    )
    op.create_index('ix_loans_member_book_return', 'loans', ['member_id', 'book_id', 'return_date'])
    op.create_index(
        'uq_loans_active_member_book',
        'loans',
        ['member_id', 'book_id'],
        unique=True,
        postgresql_where=sa.text('return_date IS NULL'),
        sqlite_where=sa.text('return_date IS NULL')
    )
    op.create_index('ix_loans_book_id', 'loans', ['book_id'])
    op.create_index('ix_loans_due_date', 'loans', ['due_date'])


def downgrade() -> None:
    """
    Drop lending tables.
    """
    op.drop_index('ix_loans_due_date', table_name='loans')
    op.drop_index('ix_loans_book_id', table_name='loans')
    op.drop_index('uq_loans_active_member_book', table_name='loans')
    op.drop_index('ix_loans_member_book_return', table_name='loans')
    op.drop_table('loans')
    op.drop_table('books')
    op.drop_table('members')
