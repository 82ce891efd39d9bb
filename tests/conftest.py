import pathlib
import site

import pytest
from dbhandle.connection import dispose_all_engines

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def clear_engines():
    """Dispose registry engines before and after each test to ensure test isolation."""
    dispose_all_engines()
    yield
    dispose_all_engines()


pytest_plugins = [
    'tests.fixtures.mocks',
    'tests.fixtures.values',
    'tests.fixtures.sqlite',
]
