"""
TwiML documents served to Twilio and helpers to read decision-service replies.

- incoming call: fork caller audio to our media-stream WebSocket and hold the line
- language menu: <Gather> one digit, each option read in its own language
- language selected: restart the stream pinned to the chosen language
- redirect: push the call into the language menu mid-call
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, Optional, Sequence

from twilio.twiml.voice_response import Gather, Start, VoiceResponse

from src.relay.language import LANGUAGE_NAMES

HOLD_SECONDS = 60
MENU_TIMEOUT_SECONDS = 6

SAY_LOCALES: Dict[str, str] = {
    "en": "en-US",
    "es": "es-MX",
    "fr": "fr-FR",
    "de": "de-DE",
    "pt": "pt-BR",
    "it": "it-IT",
    "hi": "hi-IN",
    "ar": "arb",
    "ru": "ru-RU",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "zh": "cmn-CN",
}

MENU_PROMPTS: Dict[str, str] = {
    "en": "For English, press {digit}.",
    "es": "Para español, oprima el {digit}.",
    "fr": "Pour le français, appuyez sur le {digit}.",
    "de": "Für Deutsch, drücken Sie die {digit}.",
    "pt": "Para português, pressione {digit}.",
    "it": "Per l'italiano, premere il {digit}.",
    "hi": "हिंदी के लिए {digit} दबाएं।",
    "ar": "للعربية، اضغط {digit}.",
    "ru": "Для русского языка нажмите {digit}.",
    "ja": "日本語は{digit}を押してください。",
    "ko": "한국어는 {digit}번을 누르세요.",
    "zh": "中文请按{digit}。",
}


def menu_digits(languages: Sequence[str]) -> Dict[str, str]:
    """Map keypad digits to languages in configured order ("1" -> first)."""
    return {str(i + 1): language for i, language in enumerate(languages[:9])}


def language_for_digit(digit: Optional[str], languages: Sequence[str]) -> Optional[str]:
    return menu_digits(languages).get((digit or "").strip())


def stream_twiml(stream_url: str, *, hold_seconds: int = HOLD_SECONDS) -> str:
    """Start a forked media stream and keep the call open."""
    response = VoiceResponse()
    start = Start()
    start.stream(url=stream_url)
    response.append(start)
    response.pause(length=hold_seconds)
    return str(response)


def language_menu_twiml(languages: Sequence[str], *, action_url: str, menu_url: str) -> str:
    """Keypad language menu; falls back to itself when nothing is pressed."""
    response = VoiceResponse()
    gather = Gather(num_digits=1, action=action_url, method="POST", timeout=MENU_TIMEOUT_SECONDS)
    for digit, language in menu_digits(languages).items():
        prompt = MENU_PROMPTS.get(language, "{name}: {digit}.")
        gather.say(
            prompt.format(digit=digit, name=LANGUAGE_NAMES.get(language, language)),
            language=SAY_LOCALES.get(language, "en-US"),
        )
    response.append(gather)
    response.redirect(menu_url, method="POST")
    return str(response)


def redirect_twiml(url: str) -> str:
    response = VoiceResponse()
    response.redirect(url, method="POST")
    return str(response)


def extract_spoken_text(twiml: str) -> str:
    """
    Text the call will speak for a TwiML document (all <Say> elements, in order).

    Returns "" for documents that speak nothing or cannot be parsed.
    """
    if not twiml or not twiml.strip():
        return ""
    try:
        root = ET.fromstring(twiml.strip())
    except ET.ParseError:
        return ""

    parts = []
    for element in root.iter():
        if element.tag == "Say":
            text = "".join(element.itertext()).strip()
            if text:
                parts.append(text)
    return " ".join(parts)
