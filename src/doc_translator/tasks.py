"""Entry points RQ imports by name inside worker processes."""

from doc_translator.config import settings

_services = None


def use_services(services) -> None:
    """Point the tasks at an already wired container instead of building one."""
    global _services
    _services = services


def get_services():
    global _services
    if _services is None:
        from doc_translator.services import build_services

        _services = build_services(settings)
    return _services


def translate_job(payload: dict) -> None:
    get_services().processor(payload)
