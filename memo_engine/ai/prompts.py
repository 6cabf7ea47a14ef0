"""Prompt text for memo generation."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
  from memo_engine.ai.providers.base import GenerationMetadata

SYSTEM_PROMPT = """You are an AI assistant that generates structured meeting memos from transcripts.

Your task is to analyze the transcript and create a comprehensive memo with:
1. A concise summary (2-3 sentences)
2. Key points discussed (bullet points)
3. Action items with owners and due dates when mentioned
4. Decisions made
5. Next steps or follow-ups
6. Attendees mentioned in the conversation

Extract information accurately from the transcript. If certain information (like due dates or owners) is not mentioned, omit those fields.

Respond with valid JSON using the keys: summary, keyPoints, actionItems (task, owner, dueDate, priority of high/medium/low), decisions, nextSteps, attendees."""


def build_user_prompt(transcript_text: str, metadata: GenerationMetadata) -> str:
  lines = ["Generate a structured memo from the following meeting transcript:", ""]
  if metadata.title:
    lines.append(f"Meeting Title: {metadata.title}")
  if metadata.meeting_date:
    lines.append(f"Date: {metadata.meeting_date.isoformat()}")
  if metadata.participants:
    lines.append(f"Expected Participants: {', '.join(metadata.participants)}")
  if len(lines) > 2:
    lines.append("")
  lines.append("Transcript:")
  lines.append(transcript_text)
  return "\n".join(lines)
