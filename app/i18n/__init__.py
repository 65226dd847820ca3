# -*- coding: utf-8 -*-
"""
Message catalog for trial lifecycle notifications.
No hardcoded notification text in the dispatcher.

Language resolution:
- If language not in LANGUAGES → use DEFAULT_LANGUAGE (en)
- If key missing in requested language → fallback to English
- If key missing everywhere → return key (never crash a run over a missing string)
"""

import logging

from . import en

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

LANGUAGES = {
    "en": en.LANG,
}


def days_label(language: str, count: int) -> str:
    """'1 day' / '3 days'"""
    key = "common.day" if count == 1 else "common.days"
    return get_text(language, key, count=count)


def get_text(language: str, key: str, **kwargs) -> str:
    """
    Get localized text for key in given language.

    Args:
        language: Language code (en)
        key: Dot-separated key (e.g. trial.warning.admin_title)
        **kwargs: Format placeholders (e.g. school="Springfield High" for {school})

    Returns:
        Localized string, optionally formatted. Never raises.
    """
    lang_dict = LANGUAGES.get(language, LANGUAGES[DEFAULT_LANGUAGE])
    text = lang_dict.get(key)

    if text is None and language != "en":
        text = LANGUAGES["en"].get(key)
        if text is not None:
            logger.warning("I18N fallback to EN for key=%s, lang=%s", key, language)

    if text is None:
        logger.error("I18N missing key in all languages: %s", key)
        return key

    if kwargs:
        try:
            return text.format(**kwargs)
        except (KeyError, IndexError) as e:
            logger.error("I18N format error for key=%s: %s", key, e)
            return text
    return text


__all__ = ["get_text", "days_label", "LANGUAGES", "DEFAULT_LANGUAGE"]
