import fakeredis
import pytest

from doc_translator import config, tasks
from doc_translator.errors import NotFoundError, TranslationError
from doc_translator.services import build_services


class FakeTranslator:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.failures_left = 0
        # runs once, in the middle of the next translation call
        self.on_call = None

    def _maybe_fail(self) -> None:
        if self.on_call is not None:
            hook, self.on_call = self.on_call, None
            hook()
        if self.failures_left:
            self.failures_left -= 1
            raise TranslationError("transient_http_503")

    def translate_text(self, content: str, source_lang: str, target_lang: str) -> str:
        self.calls.append(("text", source_lang, target_lang, None))
        self._maybe_fail()
        return f"[{target_lang}] {content}"

    def translate_document(self, data, filename, source_lang, target_lang, formality=None) -> bytes:
        self.calls.append(("document", source_lang, target_lang, formality))
        self._maybe_fail()
        return b"%TRANSLATED-" + target_lang.encode() + b"%" + data

    def usage(self) -> dict:
        return {"character_count": 1200, "character_limit": 500000}


class FakeGateway:
    def __init__(self) -> None:
        self.sessions: dict[str, dict] = {}

    def create_session(self, amount, currency, product_name, metadata, success_url, cancel_url, customer_email=None):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "url": f"https://checkout.test/{session_id}",
            "amount_total": amount,
            "currency": currency,
            "payment_status": "unpaid",
            "metadata": dict(metadata),
        }
        return self.sessions[session_id]

    def retrieve_session(self, session_id: str) -> dict:
        if session_id not in self.sessions:
            raise NotFoundError("No such checkout session")
        return self.sessions[session_id]

    def pay(self, session_id: str) -> dict:
        self.sessions[session_id]["payment_status"] = "paid"
        return self.sessions[session_id]


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config.settings, "database_path", str(tmp_path / "translator.db"))
    monkeypatch.setattr(config.settings, "upload_dir", str(tmp_path / "uploads"))
    monkeypatch.setattr(config.settings, "output_dir", str(tmp_path / "outputs"))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "stripe_webhook_secret", "whsec_test_secret")
    # retries run back to back so a burst worker drains them
    monkeypatch.setattr(config.settings, "queue_backoff_ms", 0)
    yield
    tasks.use_services(None)


@pytest.fixture
def translator():
    return FakeTranslator()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def services(translator, gateway, redis):
    s = build_services(config.settings, translator=translator, gateway=gateway, redis=redis)
    tasks.use_services(s)
    return s


@pytest.fixture
def pool(services):
    return services.worker_pool()


def plan_session(session_id: str, owner_id: str, credits: int = 10, plan: str = "starter", status: str = "paid") -> dict:
    return {
        "id": session_id,
        "payment_status": status,
        "amount_total": 999,
        "currency": "usd",
        "payment_intent": f"pi_{session_id}",
        "metadata": {"userId": owner_id, "plan": plan, "credits": str(credits)},
    }


def one_off_session(session_id: str, owner_id: str, billing_reference: str, status: str = "paid") -> dict:
    return {
        "id": session_id,
        "payment_status": status,
        "amount_total": 2500,
        "currency": "usd",
        "metadata": {
            "userId": owner_id,
            "usageType": "one_off",
            "billingReference": billing_reference,
            "pricingBasis": '{"word_count": 1000, "page_count": 0}',
        },
    }
