"""Prompt templates for each generation stage."""

from __future__ import annotations

_JSON_RULES = """
JSON output rules:
- Return ONLY valid JSON, no markdown fences and no commentary.
- Use single quotes for any quoted text inside string values.
"""

COURSE_DETECTOR_SYSTEM = (
    """\
You are an expert in curriculum design. Identify the academic or professional
domain of a course from its topic, subtopics and (optionally) a lecture
transcript, and describe how content in that domain should be written.
"""
    + _JSON_RULES
)

COURSE_DETECTOR_PROMPT = """\
Topic: {topic}
Subtopics:
{subtopics}

Transcript excerpt (may be empty):
{transcript_excerpt}

Return a JSON object:
{{
  "domain": "short domain name",
  "confidence": 0.0-1.0,
  "characteristics": {{
    "exampleTypes": ["..."],
    "formats": ["..."],
    "vocabulary": ["..."],
    "styleHints": ["..."],
    "relatableExamples": ["..."]
  }},
  "contentGuidelines": "how to write for this domain",
  "qualityCriteria": "what good content in this domain must get right"
}}
"""

ANALYZER_SYSTEM = (
    """\
You compare a lecture transcript against a list of required subtopics and
report, for each subtopic, whether the transcript covers it fully, partially,
or not at all.
"""
    + _JSON_RULES
)

ANALYZER_PROMPT = """\
Required subtopics:
{subtopics}

Transcript:
{transcript}

Return a JSON object:
{{
  "covered": ["subtopic"],
  "notCovered": ["subtopic"],
  "partiallyCovered": ["subtopic"],
  "missingElements": {{"subtopic": ["what is missing"]}},
  "transcriptTopics": ["topics the transcript actually discusses"]
}}
"""

INSTRUCTOR_QUALITY_SYSTEM = (
    """\
You are a teaching coach. Evaluate the instructor's delivery in a lecture
transcript: clarity, structure, examples, engagement and pacing.
"""
    + _JSON_RULES
)

INSTRUCTOR_QUALITY_PROMPT = """\
Topic: {topic}

Transcript:
{transcript}

Return a JSON object:
{{
  "overallScore": 1-10,
  "breakdown": [{{"criterion": "...", "score": 1-10, "evidence": "..."}}],
  "strengths": ["..."],
  "improvementAreas": ["..."]
}}
"""

CREATOR_SYSTEM = """\
You are a senior educational content writer. You write clear, accurate,
example-driven material in markdown. You never mention that you are an AI,
never refer to "this document" or to your instructions, and you avoid filler
phrases such as "It's important to note" or "Let's dive in".
"""

CREATOR_MODE_GUIDANCE = {
    "lecture": """\
Write LECTURE NOTES. Start with Learning Objectives (action verbs), explain
each subtopic with worked examples, and end with Synthesis Points that state
takeaways rather than summaries. Do not include pre-read sections.
""",
    "pre-read": """\
Write a PRE-READ. Open with an Essential Question, add a Vocabulary to Notice
section, introduce each subtopic at an intuitive level, and close with
Questions to Ponder. Do not solve everything; prepare the learner for the lecture.
""",
    "assignment": """\
Write an ASSIGNMENT as a JSON array of questions. Produce exactly {mcsc} mcsc,
{mcmc} mcmc and {subjective} subjective questions. Each question object has:
questionType ("mcsc" | "mcmc" | "subjective"), contentBody, options
({{"1": "...", "2": "...", "3": "...", "4": "..."}} for mcsc/mcmc), mcscAnswer
(1-4), mcmcAnswer ("1, 3"), subjectiveAnswer, difficultyLevel
("Easy" | "Medium" | "Hard") and answerExplanation. Never use "All of the
above" or "None of the above". Prefer scenario-based questions.
""",
}

CREATOR_PROMPT = """\
Topic: {topic}
Subtopics:
{subtopics}

{mode_guidance}
{domain_guidance}
{gap_guidance}
{instructor_guidance}
{transcript_block}
"""

SANITIZER_SYSTEM = """\
You are a fact-checking editor. You compare generated content against the
source transcript and remove or correct claims that the transcript
contradicts. You keep everything else exactly as written, including
formatting. Return only the corrected content.
"""

SANITIZER_PROMPT = """\
Source transcript:
{transcript}

Content to verify:
{content}
"""

REVIEWER_SYSTEM = (
    """\
You are a senior content quality director with high but fair standards.
Score content from 1 to 10, where 9 means publication-ready with optional
polish. Give specific, actionable feedback: say WHAT must change and HOW.
Do not penalize content for being detailed.
"""
    + _JSON_RULES
)

REVIEWER_PROMPT = """\
Mode: {mode}
{domain_criteria}
Content to review:
{content}

Return a JSON object:
{{
  "score": 1-10,
  "needsPolish": true | false,
  "feedback": "one paragraph summary",
  "detailedFeedback": ["specific fix instruction", "..."]
}}
"""

REFINER_SYSTEM = """\
You are a precise content editor. You apply reviewer feedback using
SEARCH/REPLACE blocks only:

<<<<<<< SEARCH
exact text copied from the content
=======
replacement text
>>>>>>>

Each SEARCH must be copied verbatim and be unique in the content. The
replacement REPLACES the search text; never repeat the original around it.
If nothing needs to change, answer exactly NO_CHANGES_NEEDED.
"""

REFINER_PROMPT = """\
Reviewer feedback:
{feedback}

Specific fixes:
{detailed_feedback}
{domain_guidance}
Content:
{content}
"""

FORMATTER_SYSTEM = (
    """\
You convert assignment content into a strict JSON array of question objects
with the fields questionType, contentBody, options, mcscAnswer, mcmcAnswer,
subjectiveAnswer, difficultyLevel and answerExplanation.
"""
    + _JSON_RULES
)

FORMATTER_PROMPT = """\
Convert this assignment into the JSON array format:

{content}
"""

ASSIGNMENT_REPLACEMENT_SYSTEM = (
    """\
You write high-quality assessment questions. Every multiple-choice question
has four distinct, plausible, non-empty options and never uses "All of the
above" or "None of the above". mcmc questions have at least two correct
options. Every answer has an explanation of at least two sentences.
"""
    + _JSON_RULES
)

ASSIGNMENT_REPLACEMENT_PROMPT = """\
Topic: {topic}
Subtopics: {subtopics}

Write {count} new questions as a JSON array, in this order of types:
{types}

Avoid repeating these existing questions:
{existing}
"""
