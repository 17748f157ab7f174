import pytest

from powersim.config import settings


@pytest.fixture
def small_grid():
    return {"sample_sizes": [10, 20, 30], "effect_sizes": [0.0, 0.5]}


@pytest.fixture
def restore_settings():
    saved = settings.model_dump()
    yield settings
    for key, value in saved.items():
        setattr(settings, key, value)
