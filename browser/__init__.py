"""
Browser automation for the scraping engine.

    from browser import SessionManager, SessionSettings, detect_challenge
"""

from browser.challenge_detector import (
    CHALLENGE_PHRASES,
    CHALLENGE_SELECTORS,
    detect_challenge,
    html_has_challenge,
    text_has_challenge,
)
from browser.session_manager import SessionManager, SessionSettings

__all__ = [
    "SessionManager",
    "SessionSettings",
    "detect_challenge",
    "html_has_challenge",
    "text_has_challenge",
    "CHALLENGE_SELECTORS",
    "CHALLENGE_PHRASES",
]
