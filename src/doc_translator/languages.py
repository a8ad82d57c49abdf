SOURCE_LANGUAGES = {
    "bg": "Bulgarian",
    "cs": "Czech",
    "da": "Danish",
    "de": "German",
    "el": "Greek",
    "en": "English",
    "es": "Spanish",
    "et": "Estonian",
    "fi": "Finnish",
    "fr": "French",
    "hu": "Hungarian",
    "id": "Indonesian",
    "it": "Italian",
    "ja": "Japanese",
    "ko": "Korean",
    "lt": "Lithuanian",
    "lv": "Latvian",
    "nb": "Norwegian",
    "nl": "Dutch",
    "pl": "Polish",
    "pt": "Portuguese",
    "ro": "Romanian",
    "ru": "Russian",
    "sk": "Slovak",
    "sl": "Slovenian",
    "sv": "Swedish",
    "tr": "Turkish",
    "uk": "Ukrainian",
    "zh": "Chinese",
}

TARGET_LANGUAGES = {
    **SOURCE_LANGUAGES,
    "en-gb": "English (British)",
    "en-us": "English (American)",
    "pt-br": "Portuguese (Brazilian)",
    "pt-pt": "Portuguese (European)",
}

# DeepL only accepts a formality option for these targets
FORMALITY_TARGETS = {"de", "es", "fr", "it", "ja", "nl", "pl", "pt-br", "pt-pt", "ru"}

DOCUMENT_EXTENSIONS = {".pdf", ".docx", ".doc", ".pptx", ".xlsx", ".htm", ".html", ".odt", ".xlf", ".xliff", ".srt"}
TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json", ".xml", ".yaml", ".yml", ".log", ".rtf"}


def target_language_name(code: str) -> str | None:
    return TARGET_LANGUAGES.get(code.lower())


def is_source_language(code: str) -> bool:
    return code.lower() == "auto" or code.lower() in SOURCE_LANGUAGES
