"""
Tests for voice output helpers.
Run with: pytest tests/test_voice.py
"""

import logging

import pytest

from carbot.voice import LogSpeaker, NullSpeaker, optimize_for_voice


def test_strips_markdown():
    text = "**Turn left** in *200 meters* onto `Main St`"
    assert optimize_for_voice(text) == "Turn left in 200 meters onto Main St"


def test_line_breaks_become_sentences():
    text = "Here are options:\n- Shell station\n- BP station"
    assert optimize_for_voice(text) == "Here are options: Shell station. BP station"


def test_no_double_periods():
    assert optimize_for_voice("Done.\n\nAnything else?") == "Done. Anything else?"


def test_empty_input():
    assert optimize_for_voice("") == ""
    assert optimize_for_voice(None) == ""


@pytest.mark.asyncio
async def test_speakers(caplog):
    await NullSpeaker().speak("hello")
    with caplog.at_level(logging.INFO, logger="carbot.voice"):
        await LogSpeaker().speak("hello there")
    assert "SPEAK: hello there" in caplog.text
