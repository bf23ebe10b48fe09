"""Initial schema: users, trips, payments"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="PASSENGER"),
        sa.Column("country", sa.String(2), nullable=False, server_default="CL"),
        sa.Column("stellar_address", sa.String(56), nullable=True),
        sa.Column("driver_status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("vehicle_type", sa.String(20), nullable=True),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_users_role", "users", ["role"])
    op.create_index("idx_users_driver_status", "users", ["driver_status"])

    op.create_table(
        "trips",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("trip_number", sa.String(20), unique=True, nullable=False),
        sa.Column("passenger_id", sa.String, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("origin_address", sa.String(500), nullable=False),
        sa.Column("origin_lat", sa.Float, nullable=False),
        sa.Column("origin_lng", sa.Float, nullable=False),
        sa.Column("origin_place_id", sa.String(255), nullable=True),
        sa.Column("destination_address", sa.String(500), nullable=False),
        sa.Column("destination_lat", sa.Float, nullable=False),
        sa.Column("destination_lng", sa.Float, nullable=False),
        sa.Column("destination_place_id", sa.String(255), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("passengers", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_round_trip", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("preferred_vehicle_type", sa.String(20), nullable=True),
        sa.Column("distance_km", sa.Numeric(10, 3), nullable=False),
        sa.Column("duration_minutes", sa.Integer, nullable=False),
        sa.Column("distance_text", sa.String(50), nullable=True),
        sa.Column("duration_text", sa.String(50), nullable=True),
        sa.Column("route_polyline", sa.Text, nullable=True),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("distance_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("time_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(5), nullable=False, server_default="CLP"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("payment_qr_code", sa.Text, nullable=True),
        sa.Column("payment_address", sa.String(56), nullable=True),
        sa.Column("payment_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stellar_transaction_id", sa.String(64), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String, nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("idempotency_key", sa.String(255), unique=True, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_passenger", "trips", ["passenger_id"])
    op.create_index("idx_trips_driver", "trips", ["driver_id"])
    op.create_index("idx_trips_created", "trips", ["created_at"])
    op.create_index("idx_trips_cancelled_at", "trips", ["cancelled_at"])
    op.create_index("idx_trips_cancelled_by", "trips", ["cancelled_by"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("trip_id", sa.String, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("user_id", sa.String, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="CLP"),
        sa.Column("method", sa.String(20), nullable=False, server_default="STELLAR"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("transaction_id", sa.String(64), unique=True, nullable=True),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_payments_trip", "payments", ["trip_id"])
    op.create_index("idx_payments_status", "payments", ["status"])


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("trips")
    op.drop_table("users")
