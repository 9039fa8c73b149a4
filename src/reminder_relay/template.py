# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTML body of the reminder email."""

from html import escape

DEFAULT_SUBJECT = "LeetCode Reminder ⏰"

_NOTES_BLOCK = """
                    <div style="margin-top: 20px; padding: 10px; background-color: #f9f9f9; border-left: 4px solid #4CAF50;">
                        <h3 style="color: #4CAF50; margin: 0;">Your Notes:</h3>
                        <p style="font-size: 16px; color: #555;">{notes}</p>
                    </div>"""

_BODY = """<html>
            <body style="font-family: Arial, sans-serif; background-color: #f4f4f4; color: #333;">
                <div style="max-width: 600px; margin: 20px auto; padding: 20px; background-color: #ffffff; border-radius: 8px; box-shadow: 0 2px 10px rgba(0, 0, 0, 0.1);">
                    <h1 style="color: #4CAF50;">{title}</h1>
                    <p style="font-size: 16px; margin-top: 20px;"><strong>Problem:</strong>
                        <a href="{link}" target="_blank" style="color: #1E88E5; text-decoration: none;">{label}</a>
                    </p>{notes_block}
                    <p style="text-align: center; margin-top: 20px;">
                        <a href="{link}" target="_blank" style="background-color: #4CAF50; color: white; padding: 10px 20px; border-radius: 5px; text-decoration: none; font-weight: bold;">Solve Now</a>
                    </p>
                </div>
            </body>
        </html>"""


def render_reminder(link: str, label: str, notes: str = "", title: str = DEFAULT_SUBJECT) -> str:
    """Return the HTML reminder for ``label`` pointing at ``link``.

    Every input is HTML-escaped; the notes block is omitted when ``notes`` is
    empty or blank.
    """
    notes = (notes or "").strip()
    notes_block = _NOTES_BLOCK.format(notes=escape(notes).replace("\n", "<br>")) if notes else ""
    return _BODY.format(
        title=escape(title),
        link=escape(link, quote=True),
        label=escape(label),
        notes_block=notes_block,
    )


def build_message(payload: dict, subject: str = DEFAULT_SUBJECT) -> dict:
    """Turn a stored reminder payload into the message handed to the router."""
    return {
        "to": payload["email"],
        "subject": subject,
        "html": render_reminder(payload["link"], payload["label"], payload.get("notes") or "", title=subject),
    }
