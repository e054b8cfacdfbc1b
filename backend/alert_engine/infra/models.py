"""Loads every ORM class so string-based relationships and foreign keys resolve
regardless of which db_models module is imported first.
"""

from alert_engine.domain.teams import db_models as team_db_models  # noqa: F401
from alert_engine.domain.alerts import db_models as alert_db_models  # noqa: F401
from alert_engine.domain.channels import db_models as channel_db_models  # noqa: F401
