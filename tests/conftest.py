import pytest

from frontdesk.company_config import CompanyConfig
from frontdesk.events import EventLog
from frontdesk.orchestrator import TurnOrchestrator
from frontdesk.session import CallState

RESPONSES = [
    {
        "content_id": "hours",
        "content_type": "hours",
        "response_text": "{company_name} is open 7am to 7pm, Monday through Saturday.",
        "keywords": ["hours", "open", "close"],
        "phrases": ["what are your hours", "when are you open"],
    },
    {
        "content_id": "filter_faq",
        "content_type": "troubleshooting",
        "response_text": "Most systems need a new filter every one to three months.",
        "keywords": ["filter", "change"],
        "phrases": ["how often should i change my filter"],
        "negative_keywords": ["leak"],
    },
    {
        "content_id": "promo",
        "content_type": "marketing",
        "response_text": "Ask about our spring tune-up special!",
        "phrases": ["any specials"],
    },
]


def make_config(**overrides) -> CompanyConfig:
    document = {
        "company_id": "acme",
        "version": "1",
        "company_name": "Acme Heating",
        "responses": RESPONSES,
    }
    document.update(overrides)
    return CompanyConfig.from_dict(document)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def state():
    return CallState(call_id="call_1", company_id="acme")


@pytest.fixture
def events():
    return EventLog(turn=1)


@pytest.fixture
def orchestrator():
    return TurnOrchestrator()
