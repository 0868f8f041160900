"""Prompt text and context builders for the coach.

Plain string templates; the generator decides how they are sent.
"""

from dataclasses import dataclass
from datetime import datetime

from journalcoach.db.models import TimeOfDay, from_iso

CHECKIN_ENTRY_MAX_CHARS = 500

COACH_SYSTEM_PROMPT = """You are a supportive and insightful personal coach and journaling companion. Your role is to:

1. **Active Listening**: Pay close attention to what the user shares about their day, feelings, and experiences. Ask thoughtful follow-up questions.

2. **Gentle Guidance**: Offer suggestions for personal growth when appropriate, but never be preachy or overbearing. Frame advice as possibilities rather than directives.

3. **Emotional Support**: Validate the user's feelings and experiences. Be empathetic without being dismissive or overly positive.

4. **Pattern Recognition**: Notice recurring themes, challenges, or successes in the user's entries. Gently point these out when relevant.

5. **Goal Support**: Help the user reflect on their goals and progress. Celebrate wins, no matter how small.

Communication Style:
- Be warm but not saccharine
- Be concise and respect the user's time
- Use conversational language, not clinical terminology
- Ask one question at a time

Never:
- Provide medical, legal, or financial advice
- Be judgmental about the user's choices or feelings
- Push the user to share more than they're comfortable with"""

EVENT_MESSAGE_SYSTEM_PROMPT = """You write short, warm push notifications for a personal coaching app about events on the user's agenda.

Respond with ONLY a JSON object of the form {"title": "...", "body": "..."}.
- title: at most 40 characters
- body: at most 120 characters, personal and encouraging
Do not wrap the JSON in prose."""

CHECKIN_SYSTEM_PROMPT = """You are a supportive personal coach writing a brief, unprompted check-in push notification.

Make it personal and caring:
- Reference something specific from the user's recent journal entries (a challenge, goal, event or feeling)
- Match the time of day: energizing in the morning, a mid-day check-in in the afternoon, reflective in the evening, gentle at night
- Ask one simple question or make an encouraging observation
- Never be pushy or make the user feel guilty
- Do not repeat topics from the recent notifications listed

Respond with ONLY a JSON object of the form {"title": "...", "body": "...", "topicReference": "..."}.
- title: at most 50 characters
- body: at most 100 characters
- topicReference: a few words naming the journal topic you referenced"""

TOOL_SYSTEM_PROMPT = """You build small, self-contained interactive HTML tools that help a user reflect on their journal and daily life.

Respond with ONLY a JSON object with these keys:
- "title": short tool name
- "description": one sentence describing the tool
- "html": a complete HTML document (starting with <!DOCTYPE html>) with inline CSS and JavaScript and no external resources"""


@dataclass
class JournalEntryContext:
    """A journal entry as rendered into the coach prompt."""

    date: str
    content: str
    mood: str | None = None

    def render(self) -> str:
        day = self.date[:10]
        mood = f" (Mood: {self.mood})" if self.mood else ""
        return f"[{day}]{mood}\n{self.content}"


def build_coach_context(entries: list[JournalEntryContext]) -> str:
    """Coach system prompt with recent journal entries appended."""
    context = COACH_SYSTEM_PROMPT
    if entries:
        rendered = "\n\n---\n\n".join(entry.render() for entry in entries)
        context += f"\n\n## Recent Journal Entries (for context)\n{rendered}"
    return context


def previous_message_block(seed_messages: list[str]) -> str:
    """Explain to the model that it opened the conversation with these messages."""
    joined = "\n\n".join(seed_messages)
    return (
        "\n\n## Your Previous Message (you initiated this conversation)\n"
        "You already sent this check-in message to the user, which started "
        f'this conversation:\n"{joined}"\n\n'
        "The user is now replying to it. Continue the conversation naturally, "
        "acknowledging what you said and responding to their reply."
    )


def build_event_message_prompt(
    title: str,
    start_time: str,
    kind: str,
    end_time: str | None = None,
    description: str | None = None,
    location: str | None = None,
) -> str:
    """User prompt asking for a before/after event notification."""
    lines = [f"Event: {title}", f"Starts: {start_time}"]
    if end_time:
        lines.append(f"Ends: {end_time}")
    if location:
        lines.append(f"Location: {location}")
    if description:
        lines.append(f"Details: {description}")
    if kind == "before":
        lines.append("\nWrite a reminder sent shortly BEFORE this event starts.")
    else:
        lines.append(
            "\nWrite a follow-up sent AFTER this event, inviting the user to reflect on how it went."
        )
    return "\n".join(lines)


def build_tool_prompt(feedback: str, current_title: str | None = None, current_html: str | None = None) -> str:
    """User prompt for generating or refining an interactive tool."""
    if current_html:
        return (
            f"Here is the current tool \"{current_title or 'Daily Tool'}\":\n\n"
            f"{current_html}\n\n"
            f"Refine it according to this feedback:\n{feedback}"
        )
    return f"Create a tool based on this request:\n{feedback}"


def get_time_of_day(moment: datetime | str) -> TimeOfDay:
    """Bucket an hour into morning (5-12), afternoon (12-17), evening (17-21) or night."""
    if isinstance(moment, str):
        moment = from_iso(moment)
    hour = moment.hour
    if 5 <= hour < 12:
        return TimeOfDay.morning
    if 12 <= hour < 17:
        return TimeOfDay.afternoon
    if 17 <= hour < 21:
        return TimeOfDay.evening
    return TimeOfDay.night


@dataclass
class RecentNotificationContext:
    """A previously sent notification, listed so the model avoids its topic."""

    body: str
    time_of_day: str
    sent_at: str
    topic_reference: str | None = None

    def render(self) -> str:
        line = f'- "{self.body}" ({self.time_of_day}, {self.sent_at[:16].replace("T", " ")})'
        if self.topic_reference:
            line += f" [Topic: {self.topic_reference}]"
        return line


def build_checkin_prompt(
    time_of_day: TimeOfDay,
    entries: list[JournalEntryContext],
    recent: list[RecentNotificationContext],
) -> str:
    """User prompt for a proactive check-in notification."""
    parts = [f"Current time of day: {time_of_day.value}", "", "## Recent Journal Entries (newest first)"]
    if entries:
        for entry in entries:
            content = entry.content
            if len(content) > CHECKIN_ENTRY_MAX_CHARS:
                content = content[:CHECKIN_ENTRY_MAX_CHARS] + "..."
            parts.append(JournalEntryContext(entry.date, content, entry.mood).render())
    else:
        parts.append("No recent entries. Write a gentle reminder to journal.")
    if recent:
        parts.extend(["", "## Recent Notifications Sent (avoid repeating these topics)"])
        parts.extend(notification.render() for notification in recent)
    parts.append(
        "\nWrite a personalized check-in that draws on their journal "
        "without repeating a recent topic."
    )
    return "\n".join(parts)
