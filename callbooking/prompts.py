"""TwiML rendering for call prompts.

Every prompt is either played from our own ``/speech-audio`` endpoint (the
synthesized voice) or, when synthesis is unavailable, spoken by Twilio's
built-in ``<Say>``.  Non-final prompts sit inside a speech ``<Gather>`` whose
action posts the result to ``/call/utterance``; final prompts end with
``<Hangup/>``.
"""

from __future__ import annotations

from urllib.parse import urlencode
from xml.etree.ElementTree import Element, SubElement, tostring

from callbooking.models.lead import clean_text

SAY_VOICE = "Polly.Amy"
SAY_LANGUAGE = "en-GB"


def speech_audio_url(base_url: str, text: str) -> str:
    return f"{base_url}/speech-audio?{urlencode({'text': text})}"


def _add_speech(parent: Element, text: str, base_url: str, use_audio: bool) -> None:
    if use_audio:
        play = SubElement(parent, "Play")
        play.text = speech_audio_url(base_url, text)
    else:
        say = SubElement(parent, "Say", voice=SAY_VOICE, language=SAY_LANGUAGE)
        say.text = text


def render_prompt(
    text: str,
    base_url: str,
    hangup: bool = False,
    use_audio: bool = True,
    gather_timeout: int = 6,
) -> str:
    """Render one prompt as a TwiML document.

    Args:
        text: What to say.  Collapsed and capped like any synthesized text.
        base_url: Public URL Twilio reaches us on, without trailing slash.
        hangup: End the call after speaking instead of listening.
        use_audio: Play synthesized audio; False falls back to ``<Say>``.
        gather_timeout: Seconds of silence before Twilio reports no speech.
    """
    text = clean_text(text, 700)
    response_el = Element("Response")

    if hangup:
        _add_speech(response_el, text, base_url, use_audio)
        SubElement(response_el, "Hangup")
    else:
        gather_el = SubElement(
            response_el,
            "Gather",
            input="speech",
            action=f"{base_url}/call/utterance",
            method="POST",
            timeout=str(gather_timeout),
            speechTimeout="auto",
            language=SAY_LANGUAGE,
            actionOnEmptyResult="true",
        )
        _add_speech(gather_el, text, base_url, use_audio)

    return tostring(response_el, encoding="unicode", xml_declaration=True)
