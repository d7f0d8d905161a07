"""Baseline migration - applications, approval groups, issues and chat

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-17

Creates every table of the review workflow. Enum columns are stored by
value as VARCHAR(32) (non-native enums), so adding a member never needs a
type migration. The partial unique index uq_approval_group_final_approver
allows at most one active final approver per group.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUM = sa.String(32)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ==========================================================================
    # users
    # ==========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('department', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    # ==========================================================================
    # applications
    # ==========================================================================
    op.create_table(
        'applications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('reference', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('applicant_name', sa.String(255), nullable=True),
        sa.Column('status', ENUM, nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        _timestamp('submitted_at'),
        _timestamp('review_started_at', nullable=True),
        _timestamp('review_completed_at', nullable=True),
        _timestamp('final_approval_date', nullable=True),
        _timestamp('rejection_date', nullable=True),
        _timestamp('collected_at', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference'),
    )
    op.create_index('idx_applications_status', 'applications', ['status'])

    # ==========================================================================
    # approval_groups, approval_group_members
    # ==========================================================================
    op.create_table(
        'approval_groups',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('review_mode', ENUM, nullable=False),
        sa.Column('requires_all_approvals', sa.Boolean(), nullable=False),
        sa.Column('minimum_approvals', sa.Integer(), nullable=False),
        sa.Column('auto_assign_backups', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )

    op.create_table(
        'approval_group_members',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('approval_group_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('role', ENUM, nullable=False),
        sa.Column('can_raise_issues', sa.Boolean(), nullable=False),
        sa.Column('can_approve', sa.Boolean(), nullable=False),
        sa.Column('can_reject', sa.Boolean(), nullable=False),
        sa.Column('is_final_approver', sa.Boolean(), nullable=False),
        sa.Column('review_order', sa.Integer(), nullable=False),
        sa.Column('backup_priority', sa.Integer(), nullable=True),
        sa.Column('availability', ENUM, nullable=False),
        sa.Column('unavailable_reason', sa.String(255), nullable=True),
        _timestamp('unavailable_until', nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('added_by', sa.Uuid(), nullable=True),
        _timestamp('joined_at'),
        sa.ForeignKeyConstraint(['approval_group_id'], ['approval_groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['added_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('approval_group_id', 'user_id', name='uq_approval_group_member_user'),
    )
    # Partial unique: one active final approver per group
    op.create_index(
        'uq_approval_group_final_approver',
        'approval_group_members',
        ['approval_group_id'],
        unique=True,
        postgresql_where=sa.text('is_final_approver AND is_active'),
        sqlite_where=sa.text('is_final_approver AND is_active'),
    )

    # ==========================================================================
    # chat_threads (before assignments and issues, which reference it)
    # ==========================================================================
    op.create_table(
        'chat_threads',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('application_id', sa.Uuid(), nullable=True),
        sa.Column('thread_type', ENUM, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_resolved', sa.Boolean(), nullable=False),
        _timestamp('resolved_at', nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False),
        _timestamp('last_activity_at'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_chat_threads_application', 'chat_threads', ['application_id'])

    # ==========================================================================
    # application_group_assignments and decisions
    # ==========================================================================
    op.create_table(
        'application_group_assignments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('application_id', sa.Uuid(), nullable=False),
        sa.Column('approval_group_id', sa.Uuid(), nullable=False),
        sa.Column('review_thread_id', sa.Uuid(), nullable=True),
        sa.Column('assigned_by', sa.Uuid(), nullable=True),
        _timestamp('assigned_at'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('total_members', sa.Integer(), nullable=False),
        sa.Column('approved_count', sa.Integer(), nullable=False),
        sa.Column('rejected_count', sa.Integer(), nullable=False),
        sa.Column('pending_count', sa.Integer(), nullable=False),
        sa.Column('issues_raised', sa.Integer(), nullable=False),
        sa.Column('issues_resolved', sa.Integer(), nullable=False),
        sa.Column('ready_for_final_approval', sa.Boolean(), nullable=False),
        _timestamp('final_decision_at', nullable=True),
        _timestamp('completed_at', nullable=True),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['approval_group_id'], ['approval_groups.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['review_thread_id'], ['chat_threads.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['assigned_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_group_assignment_application',
        'application_group_assignments',
        ['application_id', 'is_active'],
    )

    op.create_table(
        'member_decisions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('assignment_id', sa.Uuid(), nullable=False),
        sa.Column('member_id', sa.Uuid(), nullable=False),
        sa.Column('status', ENUM, nullable=False),
        _timestamp('decided_at', nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(
            ['assignment_id'], ['application_group_assignments.id'], ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(['member_id'], ['approval_group_members.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'assignment_id', 'member_id', name='uq_member_decision_assignment_member'
        ),
    )

    op.create_table(
        'decision_comments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('decision_id', sa.Uuid(), nullable=False),
        sa.Column('comment_type', ENUM, nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['decision_id'], ['member_decisions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'decision_revocations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('decision_id', sa.Uuid(), nullable=False),
        sa.Column('revoked_by', sa.Uuid(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('previous_status', ENUM, nullable=False),
        _timestamp('revoked_at'),
        sa.ForeignKeyConstraint(['decision_id'], ['member_decisions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['revoked_by'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'final_approvals',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('application_id', sa.Uuid(), nullable=False),
        sa.Column('assignment_id', sa.Uuid(), nullable=True),
        sa.Column('approver_id', sa.Uuid(), nullable=False),
        sa.Column('decision', ENUM, nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        _timestamp('decision_at'),
        sa.Column('is_system_auto_decision', sa.Boolean(), nullable=False),
        sa.Column('overrode_group_decision', sa.Boolean(), nullable=False),
        sa.Column('override_reason', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['assignment_id'], ['application_group_assignments.id'], ondelete='SET NULL'
        ),
        sa.ForeignKeyConstraint(['approver_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('application_id'),
    )

    # ==========================================================================
    # application_issues
    # ==========================================================================
    op.create_table(
        'application_issues',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('application_id', sa.Uuid(), nullable=False),
        sa.Column('assignment_id', sa.Uuid(), nullable=True),
        sa.Column('raised_by', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('priority', ENUM, nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('assignment_type', ENUM, nullable=False),
        sa.Column('assigned_to_member_id', sa.Uuid(), nullable=True),
        sa.Column('assigned_to_user_id', sa.Uuid(), nullable=True),
        sa.Column('status', ENUM, nullable=False),
        sa.Column('is_blocking', sa.Boolean(), nullable=False),
        sa.Column('chat_thread_id', sa.Uuid(), nullable=True),
        sa.Column('resolution_comment', sa.Text(), nullable=True),
        sa.Column('resolved_by', sa.Uuid(), nullable=True),
        _timestamp('resolved_at', nullable=True),
        sa.Column('reopened_by', sa.Uuid(), nullable=True),
        _timestamp('reopened_at', nullable=True),
        sa.Column('reopen_count', sa.Integer(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['assignment_id'], ['application_group_assignments.id'], ondelete='SET NULL'
        ),
        sa.ForeignKeyConstraint(['raised_by'], ['users.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(
            ['assigned_to_member_id'], ['approval_group_members.id'], ondelete='SET NULL'
        ),
        sa.ForeignKeyConstraint(['assigned_to_user_id'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['chat_thread_id'], ['chat_threads.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['resolved_by'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['reopened_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_application_issues_app_status', 'application_issues', ['application_id', 'status']
    )

    # ==========================================================================
    # chat participants, messages, attachments, receipts, stars
    # ==========================================================================
    op.create_table(
        'chat_participants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('thread_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('role', ENUM, nullable=False),
        sa.Column('can_invite', sa.Boolean(), nullable=False),
        sa.Column('can_remove', sa.Boolean(), nullable=False),
        sa.Column('can_manage', sa.Boolean(), nullable=False),
        sa.Column('mute_notifications', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('unread_count', sa.Integer(), nullable=False),
        _timestamp('last_read_at', nullable=True),
        sa.Column('added_by', sa.Uuid(), nullable=True),
        _timestamp('joined_at'),
        _timestamp('removed_at', nullable=True),
        sa.Column('removed_by', sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(['thread_id'], ['chat_threads.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['added_by'], ['users.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['removed_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('thread_id', 'user_id', name='uq_chat_participant_thread_user'),
    )
    op.create_index(
        'idx_chat_participants_user_active', 'chat_participants', ['user_id', 'is_active']
    )

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('thread_id', sa.Uuid(), nullable=False),
        sa.Column('sender_id', sa.Uuid(), nullable=False),
        sa.Column('parent_id', sa.Uuid(), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('message_type', ENUM, nullable=False),
        sa.Column('status', ENUM, nullable=False),
        sa.Column('is_edited', sa.Boolean(), nullable=False),
        _timestamp('edited_at', nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        _timestamp('deleted_at', nullable=True),
        sa.Column('read_count', sa.Integer(), nullable=False),
        sa.Column('star_count', sa.Integer(), nullable=False),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['thread_id'], ['chat_threads.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['sender_id'], ['users.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['parent_id'], ['chat_messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_chat_messages_thread_created', 'chat_messages', ['thread_id', 'created_at']
    )

    op.create_table(
        'chat_attachments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_id', sa.Uuid(), nullable=False),
        sa.Column('document_id', sa.Uuid(), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=True),
        sa.Column('content_type', sa.String(100), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['message_id'], ['chat_messages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'read_receipts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        _timestamp('read_at'),
        sa.Column('is_realtime', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['message_id'], ['chat_messages.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_read_receipt_message_user'),
    )

    op.create_table(
        'message_stars',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('message_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['message_id'], ['chat_messages.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', 'user_id', name='uq_message_star_message_user'),
    )


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table('message_stars')
    op.drop_table('read_receipts')
    op.drop_table('chat_attachments')
    op.drop_index('idx_chat_messages_thread_created', table_name='chat_messages')
    op.drop_table('chat_messages')
    op.drop_index('idx_chat_participants_user_active', table_name='chat_participants')
    op.drop_table('chat_participants')
    op.drop_index('idx_application_issues_app_status', table_name='application_issues')
    op.drop_table('application_issues')
    op.drop_table('final_approvals')
    op.drop_table('decision_revocations')
    op.drop_table('decision_comments')
    op.drop_table('member_decisions')
    op.drop_index('idx_group_assignment_application', table_name='application_group_assignments')
    op.drop_table('application_group_assignments')
    op.drop_index('idx_chat_threads_application', table_name='chat_threads')
    op.drop_table('chat_threads')
    op.drop_index('uq_approval_group_final_approver', table_name='approval_group_members')
    op.drop_table('approval_group_members')
    op.drop_table('approval_groups')
    op.drop_index('idx_applications_status', table_name='applications')
    op.drop_table('applications')
    op.drop_table('users')
