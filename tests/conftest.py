import os

# app.py builds a module-level app on import; keep it offline and unthrottled
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["GOOGLE_API_KEY"] = ""
os.environ["PRIMARY_DATABASE_URL"] = ""
os.environ["DATABASE_URL"] = ""

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.runnables import RunnableLambda

from backend import BackendRouter
from pipeline import CopilotService
from settings import Settings


def fake_llm(*replies):
    return FakeListChatModel(responses=list(replies))


def unreachable_llm():
    def _boom(_):
        raise ConnectionError("model backend unreachable")

    return RunnableLambda(_boom)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        embedded_db_path=str(tmp_path / "copilot.db"),
        rate_limit_enabled=False,
    )


@pytest.fixture
def router(settings):
    r = BackendRouter.from_settings(settings)
    yield r
    r.embedded.dispose()


@pytest.fixture
def make_client(settings, router):
    from app import create_app

    def _make(llm=None):
        app = create_app(settings, service=CopilotService(settings, router, llm))
        app.config["TESTING"] = True
        return app.test_client()

    return _make
