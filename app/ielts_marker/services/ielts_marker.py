"""
IELTS Writing marking service.
Sends the essay (and Task 1 visual) to Gemini and returns a validated report;
also transcribes photographed essay pages.
"""
from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Optional, Sequence

import requests
from flask import current_app

from .annotation_store import FeedbackReport, IdAllocator
from .errors import AIServiceError, TranscriptionError
from .feedback_ingest import parse_feedback
from .gemini_client import GeminiClient, InlineImage

TASK_1 = 1
TASK_2 = 2

MIME_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.gif': 'image/gif',
    '.webp': 'image/webp',
    '.heic': 'image/heic',
}


def guess_mime_type(filename: str) -> str:
    """Determine MIME type from file extension."""
    return MIME_TYPES.get(Path(filename or '').suffix.lower(), 'image/jpeg')


def image_from_bytes(content: bytes, mime_type: str) -> InlineImage:
    return InlineImage(base64.standard_b64encode(content).decode('utf-8'), mime_type)


_IMPROVEMENT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "originalText": {
            "type": "STRING",
            "description": "The exact excerpt from the student's answer that needs improving.",
        },
        "category": {
            "type": "STRING",
            "description": 'One of "Task Response", "Coherence and Cohesion", "Lexical Resource", '
                           '"Grammatical Range and Accuracy".',
        },
        "issue": {"type": "STRING", "description": "A short, specific label for the problem."},
        "description": {"type": "STRING", "description": "A brief explanation of why this is a problem."},
        "suggestions": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "One or more corrected versions or better alternatives.",
        },
    },
    "required": ["originalText", "category", "issue", "description", "suggestions"],
}

_CRITERION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "band": {"type": "NUMBER", "description": "Band for this criterion, 0.0 to 9.0 in 0.5 steps."},
        "comment": {"type": "STRING", "description": "A short summary of performance on this criterion."},
        "details": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Specific strengths and weaknesses, following the sub-points for this criterion.",
        },
    },
    "required": ["band", "comment", "details"],
}

FEEDBACK_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "overallBand": {
            "type": "NUMBER",
            "description": "Average of the four criterion bands rounded to the nearest 0.5.",
        },
        "feedback": {
            "type": "OBJECT",
            "properties": {
                "taskResponse": _CRITERION_SCHEMA,
                "coherenceCohesion": _CRITERION_SCHEMA,
                "lexicalResource": _CRITERION_SCHEMA,
                "grammaticalRangeAccuracy": _CRITERION_SCHEMA,
            },
            "required": ["taskResponse", "coherenceCohesion", "lexicalResource", "grammaticalRangeAccuracy"],
        },
        "improvements": {"type": "ARRAY", "items": _IMPROVEMENT_SCHEMA},
    },
    "required": ["overallBand", "feedback", "improvements"],
}

_COMMON_INSTRUCTIONS = """You are a strict and meticulous IELTS Writing examiner. Give a precise, detailed and
constructive assessment of the student's answer to the question provided (and the accompanying visual, if any).
Be thorough: aim for a comprehensive list of 15-25 improvements for a standard essay, including small ones.

Your whole response MUST be JSON following the provided schema. Do not write anything outside the JSON.

### Process
1. Read and analyse each paragraph on its own.
2. Note every error and possible improvement in each paragraph across all four criteria.
3. Combine your notes into the final JSON so that bands and comments reflect the whole essay.

### Scoring
1. Overall band: the average of the four criterion bands, rounded to the nearest 0.5.
2. For each criterion give a band (0.0-9.0 in 0.5 steps), a short comment and 'details' structured by these sub-points:
   * Task Response: answering every part of the question; clear and consistent position; development and
     support of ideas; relevance.
   * Coherence and Cohesion: overall flow; cohesive devices and referencing; paragraphing; progression of ideas.
   * Lexical Resource: range; flexibility and precision; word choice and collocation; spelling and word formation.
   * Grammatical Range and Accuracy: variety of sentence structures; use of complex sentences; grammatical and
     punctuation accuracy.
3. Annotated improvements. For each one provide:
   * 'originalText': the SHORTEST possible exact excerpt of the student's answer containing the problem. Prefer
     words or phrases to whole sentences; it must be copied character for character.
   * 'category': exactly one of "Task Response", "Coherence and Cohesion", "Lexical Resource",
     "Grammatical Range and Accuracy".
   * 'issue': a short label (for example "Word choice", "Punctuation", "Lack of clarity").
   * 'description': a brief explanation of the problem.
   * 'suggestions': one or more corrected versions or better alternatives.

### Suggestion format (applies to EVERY category)
* Wrap removed or replaced original text in ~~ ~~.
* Wrap new or changed text in ** **.
* Only adding words: use ** ** alone. Only deleting: use ~~ ~~ alone.
* Examples: "...There ~~is~~ **remains** a significant debate...", "...she ~~go~~ **goes** to school...",
  "~~People says that~~ **It is commonly argued that**...", "...students should **carefully** consider..."

### Category guidance
* Lexical Resource: look for every chance to replace simple words (is, get, good, bad, very, important) with more
  precise academic vocabulary.
* Grammatical Range and Accuracy: watch for comma splices, subject-verb agreement and articles; suggest more
  complex structures.
* Coherence and Cohesion: suggest better linking words or reordering for smoother flow.
"""

_TASK_INSTRUCTIONS = {
    TASK_1: "This is a Task 1 answer. The student must describe the information shown in the visual (chart, graph, "
            "etc.). Focus on summarising key features and making comparisons. The tone must be formal and academic.",
    TASK_2: "This is a Task 2 essay. The student must present a well-developed argument in response to a point of "
            "view or problem. Focus on the clarity of the position, development of ideas and quality of argument.",
}

_TRANSCRIBE_PROMPT = """Please transcribe the handwritten or typed text from this image. The text is an IELTS essay.
Transcribe the text into continuous paragraphs. Do not preserve line breaks from the image unless they indicate a new
paragraph. Join lines that are separated by a line break in the image into a single continuous sentence with a space.
Preserve the original spelling as accurately as possible.
Only return the transcribed text, with no additional commentary, headings, or explanations. Do not add markdown
formatting."""


class IeltsMarker:
    """Mark IELTS Writing answers and transcribe essay photos."""

    def __init__(self, client: GeminiClient, transcribe_model: Optional[str] = None):
        self.client = client
        self.transcribe_model = transcribe_model

    @staticmethod
    def system_instruction(task_type: int, question: str) -> str:
        task_text = _TASK_INSTRUCTIONS.get(task_type, _TASK_INSTRUCTIONS[TASK_2])
        return f'{_COMMON_INSTRUCTIONS}\n{task_text}\n\nThe question is: "{question}"'

    def mark(
        self,
        task_type: int,
        question: str,
        essay: str,
        allocator: IdAllocator,
        image: Optional[InlineImage] = None,
    ) -> FeedbackReport:
        """Request feedback for one answer and validate it into a report."""
        if not self.client.is_configured:
            raise AIServiceError("Gemini API key has not been set. Please log in again.")

        images = [image] if task_type == TASK_1 and image is not None else None
        current_app.logger.info(
            f"Requesting IELTS feedback: task={task_type}, words={len(essay.split())}, image={bool(images)}"
        )
        try:
            raw: Any = self.client.generate_json(
                f"Please assess the following student essay:\n\n---\n\n{essay}",
                temperature=0.2,
                system_instruction=self.system_instruction(task_type, question),
                response_schema=FEEDBACK_SCHEMA,
                images=images,
            )
        except requests.exceptions.RequestException as exc:
            current_app.logger.error(f"Feedback request failed: {exc}")
            raise AIServiceError(f"Failed to get feedback from AI service: {exc}") from exc

        if raw is None:
            raise AIServiceError("Received empty response from AI model.")
        report = parse_feedback(raw, allocator)
        current_app.logger.info(
            f"Feedback received: overall={report.overall_band}, improvements={len(report.annotations)}"
        )
        return report

    def transcribe(self, image: InlineImage) -> str:
        """Transcribe one photographed page."""
        try:
            text = self.client.generate_text(
                _TRANSCRIBE_PROMPT,
                images=[image],
                model_override=self.transcribe_model,
            )
        except requests.exceptions.RequestException as exc:
            raise TranscriptionError(f"Failed to transcribe image using AI service: {exc}") from exc

        text = GeminiClient.strip_code_fence(text or '')
        if not text:
            raise TranscriptionError("The AI returned an empty transcription.")
        return text

    def transcribe_pages(self, images: Sequence[InlineImage]) -> str:
        """Transcribe pages in order and join them with a blank line."""
        pages = []
        for number, image in enumerate(images, start=1):
            current_app.logger.info(f"Transcribing page {number} of {len(images)}")
            try:
                pages.append(self.transcribe(image))
            except TranscriptionError as exc:
                raise TranscriptionError(exc.args[0], page=number) from exc
        return '\n\n'.join(pages)
