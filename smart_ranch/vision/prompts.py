"""
Vision prompt and response schema sent to the AI provider.
"""

from typing import Any, Dict

VISION_PROMPT = """You are the Smart Ranch AI Vision system. Analyze this image of cattle.
Identify visual health patterns, body condition score (BCS), posture and behaviour.
If the image contains no cattle, return a count of 0 and a null score.
For each problem found, give a clear visual description and likely veterinary or management causes.
Be precise and technical.
Reply with a single JSON object matching the schema and nothing else."""

ANALYSIS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "cattleCount": {"type": "number"},
        "healthScore": {"type": "number"},
        "identifiedIssues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "issue": {"type": "string"},
                    "description": {"type": "string"},
                    "possibleCauses": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
    },
}
