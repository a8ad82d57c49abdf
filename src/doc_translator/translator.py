import time
from typing import Protocol

import httpx

from doc_translator.errors import TranslateTimeoutError, TranslationError
from doc_translator.languages import FORMALITY_TARGETS

TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class Translator(Protocol):
    def translate_text(self, content: str, source_lang: str, target_lang: str) -> str: ...

    def translate_document(
        self,
        data: bytes,
        filename: str,
        source_lang: str,
        target_lang: str,
        formality: str | None = None,
    ) -> bytes: ...

    def usage(self) -> dict: ...


class DeepLClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api-free.deepl.com/v2",
        timeout_sec: int = 60,
        poll_interval_sec: float = 2.0,
        poll_max_attempts: int = 150,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.poll_max_attempts = poll_max_attempts
        self.transport = transport
        self.sleep = sleep

    def _headers(self) -> dict:
        if not self.api_key:
            raise TranslationError("DEEPL_API_KEY is not set")
        return {"Authorization": f"DeepL-Auth-Key {self.api_key}"}

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        last_err: Exception | None = None
        for attempt in range(3):
            try:
                with httpx.Client(timeout=self.timeout_sec, transport=self.transport) as client:
                    r = client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
                    r.raise_for_status()
                    return r
            except httpx.TimeoutException as exc:
                last_err = TranslateTimeoutError(str(exc))
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in TRANSIENT_STATUS:
                    last_err = TranslationError(f"transient_http_{code}")
                else:
                    raise TranslationError(f"http_{code}: {exc.response.text}") from exc
            except httpx.HTTPError as exc:
                last_err = TranslationError(str(exc))

            self.sleep(0.6 * (attempt + 1))

        assert last_err is not None
        raise last_err

    @staticmethod
    def _lang_params(source_lang: str, target_lang: str) -> dict:
        params = {"target_lang": target_lang.upper()}
        if source_lang and source_lang != "auto":
            params["source_lang"] = source_lang.upper()
        return params

    def usage(self) -> dict:
        body = self._request("GET", "/usage").json()
        return {
            "character_count": int(body.get("character_count") or 0),
            "character_limit": int(body.get("character_limit") or 0),
        }

    def translate_text(self, content: str, source_lang: str, target_lang: str) -> str:
        data = {"text": content, **self._lang_params(source_lang, target_lang)}
        body = self._request("POST", "/translate", data=data).json()
        translations = body.get("translations") or []
        if not translations or "text" not in translations[0]:
            raise TranslationError("Invalid DeepL response")
        return translations[0]["text"]

    def translate_document(
        self,
        data: bytes,
        filename: str,
        source_lang: str,
        target_lang: str,
        formality: str | None = None,
    ) -> bytes:
        form = self._lang_params(source_lang, target_lang)
        if formality and formality != "default" and target_lang.lower() in FORMALITY_TARGETS:
            form["formality"] = formality
        upload = self._request("POST", "/document", data=form, files={"file": (filename, data)}).json()
        document_id = upload.get("document_id")
        document_key = upload.get("document_key")
        if not document_id or not document_key:
            raise TranslationError("Invalid DeepL document upload response")

        for _ in range(self.poll_max_attempts):
            status = self._request("POST", f"/document/{document_id}", data={"document_key": document_key}).json()
            state = status.get("status")
            if state == "done":
                result = self._request(
                    "POST",
                    f"/document/{document_id}/result",
                    data={"document_key": document_key},
                )
                return result.content
            if state == "error":
                raise TranslationError(status.get("error_message") or "DeepL document translation failed")
            self.sleep(self.poll_interval_sec)

        raise TranslateTimeoutError(f"document {document_id} not finished after polling")
