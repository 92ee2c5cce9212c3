import pytest

from config.base import _coerce_bool, _coerce_int, _parse_name_list
from config.validation import validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "0123456789abcdef",
    "DATABASE_URL": "postgresql://warehouse@db/warehouse",
    "PIPELINE_STORAGE_BACKEND": "s3",
    "PIPELINE_S3_BUCKET": "exports",
}


def test_non_production_environments_always_pass():
    assert validate_environment("development", env={}) == (True, [])


def test_complete_production_environment_passes():
    assert validate_environment("production", env=PRODUCTION_ENV) == (True, [])


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"SECRET_KEY": "your-secret-key"}, "SECRET_KEY"),
        ({"DATABASE_URL": ""}, "DATABASE_URL"),
        ({"PIPELINE_S3_BUCKET": ""}, "PIPELINE_S3_BUCKET"),
        ({"PIPELINE_STORAGE_BACKEND": "local"}, "PIPELINE_STORAGE_ROOT"),
        ({"PIPELINE_SOURCES_PATH": "/nowhere/sources.yml"}, "missing file"),
        ({"PIPELINE_WORKER_ENABLED": "true"}, "CELERY_BROKER_URL"),
    ],
)
def test_production_checks_report_each_problem(overrides, fragment):
    is_valid, errors = validate_environment("production", env={**PRODUCTION_ENV, **overrides})

    assert not is_valid
    assert len(errors) == 1
    assert fragment in errors[0]


def test_setting_parsers():
    assert _coerce_bool("Yes") is True
    assert _coerce_bool("off", default=True) is False
    assert _coerce_bool("maybe", default=True) is True
    assert _coerce_int("250", 500) == 250
    assert _coerce_int("abc", 500) == 500
    assert _coerce_int("-3", 500, minimum=1) == 1
    assert _parse_name_list(" Keap,stripe,,KEAP ") == ("keap", "stripe")
