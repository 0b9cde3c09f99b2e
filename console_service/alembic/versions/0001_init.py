from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("login", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=200), nullable=False, unique=True),
        sa.Column("password", sa.String(length=200), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("middle_name", sa.String(length=100), nullable=True),
        sa.Column("department", sa.String(length=200), nullable=True),
        sa.Column("division", sa.String(length=200), nullable=True),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="LOCAL"),
    )
    op.create_table(
        "groups",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("source", sa.String(length=50), nullable=False, server_default="LOCAL"),
    )
    op.create_index("ix_groups_name", "groups", ["name"])
    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(length=36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.String(length=36),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )
    op.create_index("ix_group_members_group_id", "group_members", ["group_id"])
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])
    op.create_table(
        "group_relations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "parent_group_id",
            sa.String(length=36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "child_group_id",
            sa.String(length=36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint("parent_group_id", "child_group_id", name="uq_group_relation"),
        sa.CheckConstraint(
            "parent_group_id <> child_group_id", name="ck_group_relation_not_self"
        ),
    )
    op.create_index("ix_group_relations_parent_group_id", "group_relations", ["parent_group_id"])
    op.create_index("ix_group_relations_child_group_id", "group_relations", ["child_group_id"])
    op.create_table(
        "services",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "resources",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=100), nullable=True),
        sa.Column(
            "service_id",
            sa.String(length=36),
            sa.ForeignKey("services.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    op.create_index("ix_resources_service_id", "resources", ["service_id"])
    op.create_table(
        "accesses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_type", sa.String(length=20), nullable=False),
        sa.Column("source", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=True),
    )
    op.create_index("ix_accesses_source", "accesses", ["source"])
    op.create_index("ix_accesses_category", "accesses", ["category"])
    op.create_table(
        "resource_accesses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "resource_id",
            sa.String(length=36),
            sa.ForeignKey("resources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "access_id",
            sa.String(length=36),
            sa.ForeignKey("accesses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint("resource_id", "access_id", name="uq_resource_access"),
    )
    op.create_index("ix_resource_accesses_resource_id", "resource_accesses", ["resource_id"])
    op.create_index("ix_resource_accesses_access_id", "resource_accesses", ["access_id"])


def downgrade() -> None:
    op.drop_table("resource_accesses")
    op.drop_table("accesses")
    op.drop_table("resources")
    op.drop_table("services")
    op.drop_table("group_relations")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("users")
