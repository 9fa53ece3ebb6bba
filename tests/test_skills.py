from __future__ import annotations

import pytest

from devicepilot.shared.data_types import ActionDecision, ActionKind, ActionResult, SkillName, UnknownActionError
from devicepilot.skills.engine import LikeAttempt, LikeAttemptMemory, SkillEngine
from doubles import FakeDevice, element, screen_of


def engine_for(device, sanitizer, clock, **kwargs) -> SkillEngine:
    return SkillEngine(device, sanitizer, clock=clock, **kwargs)


def skill(name: SkillName, **kwargs) -> ActionDecision:
    return ActionDecision(kind=name, **kwargs)


# ---------------------------------------------------------------------- #
# submit_message
# ---------------------------------------------------------------------- #


async def test_submit_message_without_enabled_clickable_elements_fails_without_tapping(sanitizer, clock):
    device = FakeDevice()
    elements = [element("Send", 1000, 2300, clickable=True, enabled=False), element("Hello there")]

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.SUBMIT_MESSAGE), elements)

    assert result.success is False
    assert result.message.startswith("Could not find a Send/Submit button")
    assert device.commands == []


async def test_submit_message_taps_send_and_reports_new_content(sanitizer, clock):
    field = element("", 500, 2300, editable=True, hint="Message")
    send = element("Send", 1000, 2300, clickable=True)
    device = FakeDevice([screen_of(field, send, element("The answer is 42", 540, 1500))])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.SUBMIT_MESSAGE), [field, send])

    assert result.success is True
    assert "The answer is 42" in result.message
    assert device.commands == [{"type": "tap", "x": 1000, "y": 2300}]
    assert 6.0 in clock.sleeps


async def test_submit_message_on_small_screen_taps_bottom_right_icon(sanitizer, clock):
    back = element("", 60, 100, clickable=True, width=80, height=80)
    field = element("", 300, 1220, editable=True, hint="Message", width=500)
    icon = element("", 660, 1220, clickable=True, width=80, height=80)
    device = FakeDevice([screen_of(back, field, icon)])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.SUBMIT_MESSAGE), [back, field, icon])

    assert device.commands[0] == {"type": "tap", "x": 660, "y": 1220}
    assert result.success is True


async def test_submit_message_without_new_content_is_ambiguous_success(sanitizer, clock):
    send = element("Send", 1000, 2300, clickable=True)
    device = FakeDevice([screen_of(send)])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.SUBMIT_MESSAGE), [send])

    assert result.success is True
    assert "No new content yet" in result.message


# ---------------------------------------------------------------------- #
# find_and_tap
# ---------------------------------------------------------------------- #


async def test_find_and_tap_scrolls_exactly_twice_and_taps_third_screen(sanitizer, clock):
    first = [element("Wi-Fi", 540, 400, clickable=True), element("Bluetooth", 540, 600, clickable=True)]
    second = screen_of(element("Display", 540, 400, clickable=True), element("Sound", 540, 600, clickable=True))
    third = screen_of(element("Battery", 540, 400, clickable=True), element("Settings", 540, 1800, clickable=True))
    device = FakeDevice([second, third])

    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.FIND_AND_TAP, query="Settings"), first
    )

    assert result.success is True
    assert result.data == {"text": "Settings", "x": 540, "y": 1800, "scrolls": 2}
    assert len(device.commands_of("swipe")) == 2
    assert device.commands[-1] == {"type": "tap", "x": 540, "y": 1800}
    assert clock.sleeps == [1.5, 1.5]


async def test_find_and_tap_visible_target_does_not_scroll(sanitizer, clock):
    device = FakeDevice()
    elements = [element("Settings", 300, 700, clickable=True)]

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.FIND_AND_TAP, query="settings"), elements)

    assert result.success is True
    assert device.commands == [{"type": "tap", "x": 300, "y": 700}]


async def test_find_and_tap_gives_up_after_scroll_budget(sanitizer, clock):
    device = FakeDevice([screen_of(element("Nothing here", 540, 400))])

    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.FIND_AND_TAP, query="Settings"), [element("Wi-Fi", 540, 400)]
    )

    assert result.success is False
    assert "after 10 scrolls" in result.message
    assert "Wi-Fi" in result.message
    assert len(device.commands_of("swipe")) == 10
    assert device.commands_of("tap") == []


async def test_find_and_tap_requires_query(sanitizer, clock):
    result = await engine_for(FakeDevice(), sanitizer, clock).execute(skill(SkillName.FIND_AND_TAP), [])
    assert result.success is False


# ---------------------------------------------------------------------- #
# text skills
# ---------------------------------------------------------------------- #


async def test_copy_visible_text_sets_clipboard_with_quoted_text(sanitizer, clock):
    device = FakeDevice()
    elements = [element("it's line two", y=500), element("Line one", y=100), element("Tap me", clickable=True)]

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.COPY_VISIBLE_TEXT), elements)

    assert result.success is True
    assert result.data == {"text": "Line one\nit's line two"}
    (command,) = device.commands
    assert command["type"] == "shell"
    assert command["command"].startswith("cmd clipboard set-text ")
    assert "'\"'\"'" in command["command"]


async def test_copy_visible_text_with_unmatched_query_fails(sanitizer, clock):
    device = FakeDevice()
    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.COPY_VISIBLE_TEXT, query="invoice"), [element("Hello")]
    )
    assert result.success is False
    assert device.commands == []


async def test_read_screen_scrolls_until_nothing_new(sanitizer, clock):
    page_one = [element("Intro", y=300), element("Part 1", y=900)]
    page_two = screen_of(element("Part 1", y=300), element("Part 2", y=900))
    device = FakeDevice([page_two])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.READ_SCREEN), page_one)

    assert result.success is True
    assert result.data == {"text": "Intro\nPart 1\nPart 2"}
    assert len(device.commands_of("swipe")) == 2
    assert device.commands_of("shell")[-1]["command"].startswith("cmd clipboard set-text")


async def test_wait_for_content_succeeds_when_enough_new_text(sanitizer, clock):
    base = [element("You: hello", y=400)]
    reply = element("Assistant: here is a long enough answer", y=800)
    device = FakeDevice([screen_of(*base), screen_of(*base, reply)])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.WAIT_FOR_CONTENT), base)

    assert result.success is True
    assert result.data["attempts"] == 2
    assert "after 6s" in result.message


async def test_wait_for_content_times_out(sanitizer, clock):
    base = [element("You: hello", y=400)]
    device = FakeDevice([screen_of(*base)])

    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.WAIT_FOR_CONTENT), base)

    assert result.success is False
    assert clock.sleeps == [3.0] * 5


# ---------------------------------------------------------------------- #
# compose_email
# ---------------------------------------------------------------------- #


async def test_compose_email_opens_intent_and_pastes_body(sanitizer, clock):
    to_field = element("", 540, 300, id="com.mail:id/to", editable=True)
    body = element("", 540, 900, id="com.mail:id/body", editable=True, height=600)
    device = FakeDevice([screen_of(to_field, body)])

    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.COMPOSE_EMAIL, query="bob@example.com", text="Hi Bob"), []
    )

    assert result.success is True
    assert result.data == {"to": "bob@example.com", "x": 540, "y": 900}
    kinds = [command["type"] for command in device.commands]
    assert kinds == ["shell", "tap", "shell", "global_action"]
    assert "mailto:bob@example.com" in device.commands[0]["command"]
    assert device.commands[1] == {"type": "tap", "x": 540, "y": 900}
    assert device.commands[3] == {"type": "global_action", "action": "paste"}


async def test_compose_email_extracts_address_from_text(sanitizer, clock):
    device = FakeDevice([screen_of(element("", 540, 900, editable=True))])
    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.COMPOSE_EMAIL, text="write to alice@example.org"), []
    )
    assert result.success is True
    assert result.data["to"] == "alice@example.org"


async def test_compose_email_without_address_fails(sanitizer, clock):
    device = FakeDevice()
    result = await engine_for(device, sanitizer, clock).execute(skill(SkillName.COMPOSE_EMAIL, text="hello"), [])
    assert result.success is False
    assert device.commands == []


async def test_compose_email_reports_launch_failure(sanitizer, clock):
    device = FakeDevice(results={"shell": ActionResult(success=False, message="no activity")})
    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.COMPOSE_EMAIL, query="bob@example.com"), []
    )
    assert result.success is False
    assert "no activity" in result.message


async def test_compose_email_without_editable_fields_fails_after_settling(sanitizer, clock):
    device = FakeDevice([screen_of(element("Inbox", 540, 400), element("Compose", 900, 2200, clickable=True))])

    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.COMPOSE_EMAIL, query="bob@example.com", text="Hi Bob"), []
    )

    assert result.success is False
    assert result.message == "Launched email compose but no editable fields appeared"
    assert [command["type"] for command in device.commands] == ["shell"]


# ---------------------------------------------------------------------- #
# like_nth_comment / verify_nth_comment_like
# ---------------------------------------------------------------------- #


def comment_screen(offset: int = 0, counts=(5, 7, 9), selected_row: int = 0):
    elements = []
    for row, count in enumerate(counts, start=1):
        y = 700 + row * 300 + offset
        elements.append(element("Like", 1000, y, clickable=True, width=60, height=60, selected=row == selected_row))
        elements.append(element(str(count), 920, y, width=60, height=40))
    return elements


async def test_like_nth_comment_records_attempt(sanitizer, clock):
    memory = LikeAttemptMemory()
    device = FakeDevice()

    result = await engine_for(device, sanitizer, clock, like_memory=memory).execute(
        skill(SkillName.LIKE_NTH_COMMENT, query="2"), comment_screen()
    )

    assert result.success is True
    assert device.commands == [{"type": "tap", "x": 1000, "y": 1300}]
    assert memory.get(2) == LikeAttempt(index=2, x=1000, y=1300, count_before=7)


async def test_like_nth_comment_with_too_few_rows_fails(sanitizer, clock):
    device = FakeDevice()
    result = await engine_for(device, sanitizer, clock).execute(
        skill(SkillName.LIKE_NTH_COMMENT, query="5"), comment_screen()
    )
    assert result.success is False
    assert "Only found 3" in result.message
    assert device.commands == []


async def test_verify_like_by_count_change_after_relayout(sanitizer, clock):
    memory = LikeAttemptMemory()
    memory.record(LikeAttempt(index=2, x=1000, y=1300, count_before=7))

    result = await engine_for(FakeDevice(), sanitizer, clock, like_memory=memory).execute(
        skill(SkillName.VERIFY_NTH_COMMENT_LIKE, query="2"), comment_screen(offset=30, counts=(5, 8, 9))
    )

    assert result.success is True
    assert result.data["signal"] == "count"
    assert result.data["count_now"] == 8


async def test_verify_like_selection_takes_precedence(sanitizer, clock):
    memory = LikeAttemptMemory()
    memory.record(LikeAttempt(index=2, x=1000, y=1300, count_before=7))

    result = await engine_for(FakeDevice(), sanitizer, clock, like_memory=memory).execute(
        skill(SkillName.VERIFY_NTH_COMMENT_LIKE, query="2"), comment_screen(counts=(5, 8, 9), selected_row=2)
    )

    assert result.success is True
    assert result.data["signal"] == "selected"


async def test_verify_like_unconfirmed_is_soft_failure(sanitizer, clock):
    memory = LikeAttemptMemory()
    memory.record(LikeAttempt(index=2, x=1000, y=1300, count_before=7))

    result = await engine_for(FakeDevice(), sanitizer, clock, like_memory=memory).execute(
        skill(SkillName.VERIFY_NTH_COMMENT_LIKE, query="2"), comment_screen()
    )

    assert result.success is False
    assert "not confirmed yet" in result.message
    assert result.data["signal"] is None


async def test_engine_rejects_primitive_decisions(sanitizer, clock):
    with pytest.raises(UnknownActionError):
        await engine_for(FakeDevice(), sanitizer, clock).execute(ActionDecision(kind=ActionKind.TAP), [])
