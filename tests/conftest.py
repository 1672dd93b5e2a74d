import pytest
import pytz
from datetime import datetime, timedelta

from calmirror.config import Settings
from calmirror.database import DatabaseManager
from calmirror.models import RemoteEvent
from pydantic_settings import SettingsConfigDict


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        graph_access_token='test-token',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db',
        retry_delay_seconds=0,
    )
    values.update(overrides)
    return TestSettings(**values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def make_event():
    """Factory for remote change records starting 2024-03-01 10:00 UTC."""
    def _make(event_id='evt-1', **fields):
        start = fields.pop('start', datetime(2024, 3, 1, 10, 0, tzinfo=pytz.UTC))
        end = fields.pop('end') if 'end' in fields else start + timedelta(hours=1)
        values = dict(
            id=event_id,
            global_uid=f'uid-{event_id}',
            subject='Board Meeting',
            start=start,
            end=end,
            last_modified=datetime(2024, 2, 1, tzinfo=pytz.UTC),
        )
        values.update(fields)
        return RemoteEvent(**values)
    return _make
