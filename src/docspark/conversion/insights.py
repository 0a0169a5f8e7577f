import random
from datetime import date
from pathlib import Path

from .models import Job


class MockInsightsGenerator:
    """Produces a plausible-looking insights payload without reading the document.

    Pass a seeded ``random.Random`` to get repeatable output.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self, job: Job) -> dict[str, object]:
        name = job.original_name
        rng = self._rng
        return {
            "summary": (
                f'This document "{name}" contains structured content including text paragraphs, '
                "headings, and data fields. The layout is well-organized with clear sections."
            ),
            "keyFields": [
                {"label": "Document Title", "value": Path(name).stem or name},
                {"label": "Detected Date", "value": date.today().isoformat()},
                {"label": "Estimated Word Count", "value": str(rng.randint(200, 2199))},
            ],
            "redactionHints": [
                {"type": "email", "value": "example@redacted.com"},
                {"type": "phone", "value": "+1-555-XXX-XXXX"},
            ],
            "qualityScore": {
                "layout": rng.randint(80, 94),
                "textIntegrity": rng.randint(88, 97),
                "overall": rng.randint(85, 96),
            },
        }
