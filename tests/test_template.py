from reminder_relay.template import DEFAULT_SUBJECT, build_message, render_reminder


def test_render_contains_link_label_and_notes():
    html = render_reminder("https://leetcode.com/problems/two-sum/", "Two Sum", "use a hash map")
    assert 'href="https://leetcode.com/problems/two-sum/"' in html
    assert "Two Sum" in html
    assert "Your Notes:" in html
    assert "use a hash map" in html
    assert "Solve Now" in html


def test_notes_block_omitted_when_blank():
    assert "Your Notes:" not in render_reminder("https://x", "Label", "")
    assert "Your Notes:" not in render_reminder("https://x", "Label", "   ")


def test_inputs_are_escaped():
    html = render_reminder('https://x/?a=1&b="2"', "<script>alert(1)</script>", "<b>bold</b>")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "&lt;b&gt;bold&lt;/b&gt;" in html
    assert 'href="https://x/?a=1&amp;b=&quot;2&quot;"' in html


def test_build_message_maps_payload():
    message = build_message({"email": "a@example.com", "link": "https://x", "label": "Two Sum", "notes": None})
    assert message["to"] == "a@example.com"
    assert message["subject"] == DEFAULT_SUBJECT
    assert "Two Sum" in message["html"]
    assert "Your Notes:" not in message["html"]
