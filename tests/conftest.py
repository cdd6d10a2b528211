import pathlib
import sys
from collections.abc import Iterator

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from aether.config import get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> Iterator[None]:
    """sse-starlette caches its shutdown event on the first event loop it sees."""
    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def gateway_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    """Point settings at a fake gateway and drop any cached instance."""
    monkeypatch.setenv("GATEWAY_API_KEY", "test-key")
    monkeypatch.setenv("GATEWAY_BASE_URL", "https://gemini.test")
    monkeypatch.delenv("ACCESS_SECRET", raising=False)
    monkeypatch.delenv("AETHER_PASSWORD", raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()
