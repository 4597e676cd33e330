from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
