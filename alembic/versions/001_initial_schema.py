"""Restaurants and ratings tables with change-notification triggers.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Create restaurants table
    op.execute("""
        CREATE TABLE restaurants (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            category TEXT,
            city TEXT,
            price INTEGER,
            photo TEXT,
            num_ratings INTEGER NOT NULL DEFAULT 0 CHECK (num_ratings >= 0),
            sum_rating DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (sum_rating >= 0),
            avg_rating DOUBLE PRECISION NOT NULL DEFAULT 0,
            "timestamp" TIMESTAMPTZ DEFAULT now()
        );
    """)

    op.execute("""
        CREATE INDEX idx_restaurants_avg_rating ON restaurants(avg_rating DESC);
    """)

    op.execute("""
        CREATE INDEX idx_restaurants_num_ratings ON restaurants(num_ratings DESC);
    """)

    op.execute("""
        CREATE INDEX idx_restaurants_filters ON restaurants(category, city, price);
    """)

    # Create ratings table (a restaurant's review sub-collection)
    op.execute("""
        CREATE TABLE ratings (
            id TEXT PRIMARY KEY,
            restaurant_id TEXT NOT NULL REFERENCES restaurants(id) ON DELETE CASCADE,
            rating INTEGER NOT NULL,
            text TEXT,
            user_id TEXT,
            "timestamp" TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
        );
    """)

    op.execute("""
        CREATE INDEX idx_ratings_restaurant_timestamp ON ratings(restaurant_id, "timestamp" DESC);
    """)

    # Change notification: payload is the record path
    op.execute("""
        CREATE OR REPLACE FUNCTION notify_restaurant_change() RETURNS trigger AS $$
        DECLARE
            rec RECORD;
        BEGIN
            IF TG_OP = 'DELETE' THEN rec := OLD; ELSE rec := NEW; END IF;
            PERFORM pg_notify('record_changes', 'restaurants/' || rec.id);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION notify_rating_change() RETURNS trigger AS $$
        DECLARE
            rec RECORD;
        BEGIN
            IF TG_OP = 'DELETE' THEN rec := OLD; ELSE rec := NEW; END IF;
            PERFORM pg_notify('record_changes', 'restaurants/' || rec.restaurant_id || '/ratings/' || rec.id);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER restaurants_notify
        AFTER INSERT OR UPDATE OR DELETE ON restaurants
        FOR EACH ROW EXECUTE FUNCTION notify_restaurant_change();
    """)

    op.execute("""
        CREATE TRIGGER ratings_notify
        AFTER INSERT OR UPDATE OR DELETE ON ratings
        FOR EACH ROW EXECUTE FUNCTION notify_rating_change();
    """)


def downgrade():
    op.execute("DROP TRIGGER IF EXISTS ratings_notify ON ratings;")
    op.execute("DROP TRIGGER IF EXISTS restaurants_notify ON restaurants;")
    op.execute("DROP FUNCTION IF EXISTS notify_rating_change();")
    op.execute("DROP FUNCTION IF EXISTS notify_restaurant_change();")
    op.execute("DROP TABLE IF EXISTS ratings;")
    op.execute("DROP TABLE IF EXISTS restaurants;")
