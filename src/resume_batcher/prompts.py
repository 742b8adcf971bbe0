"""Prompt construction for batch calls."""

from typing import Sequence

from .scheduler import BatchEntry

DOCUMENT_SEPARATOR = "===== RESUME {index} ====="
RECORD_KEY = "item_{index}"

RECORD_SCHEMA = """{
    "name": "Full name",
    "email": "email@example.com",
    "phone": "phone number",
    "location": "city, state/country",
    "linkedin": "linkedin profile URL",
    "github": "github profile URL",
    "summary": "brief professional summary",
    "skills": ["skill1", "skill2"],
    "experience": [
      {
        "title": "Job title",
        "company": "Company name",
        "start_date": "YYYY-MM",
        "end_date": "YYYY-MM or present",
        "description": "job description",
        "achievements": ["achievement1"]
      }
    ],
    "education": [
      {
        "degree": "degree type",
        "field": "field of study",
        "institution": "school name",
        "graduation_date": "YYYY"
      }
    ],
    "projects": [
      {"name": "project name", "description": "project description", "technologies": ["tech1"]}
    ]
  }"""

BATCH_TEMPLATE = """You are a professional resume analyzer. Analyze the following {count} resumes and extract structured information for each.

JOB DESCRIPTION:
{context}

RESUMES TO ANALYZE:
{documents}

Return one JSON object with a key per resume, "{first_key}" through "{last_key}", each holding:
{{
  "{first_key}": {schema},
  ...
}}

Return only the JSON object, no additional text. Ensure all dates are in YYYY-MM format.
"""


def build_batch_prompt(entries: Sequence[BatchEntry], context: str = "") -> str:
    """Render one prompt covering every entry of a batch, in order.

    Record keys are 1-based and follow the entry order, so the response can
    be mapped back with split_batch_response.
    """
    if not entries:
        raise ValueError("Cannot build a prompt for an empty batch")

    documents = "\n".join(
        f"{DOCUMENT_SEPARATOR.format(index=i)}\n{entry.text}\n"
        for i, entry in enumerate(entries, start=1)
    )
    return BATCH_TEMPLATE.format(
        count=len(entries),
        context=context.strip() or "General position evaluation",
        documents=documents,
        first_key=RECORD_KEY.format(index=1),
        last_key=RECORD_KEY.format(index=len(entries)),
        schema=RECORD_SCHEMA,
    )
