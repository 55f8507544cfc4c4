#!/usr/bin/env python3
"""
Seed the CSM checklist form definition into the document store.

Run with:
    python -m scripts.seed_forms
"""

from __future__ import annotations

import asyncio
import logging

import structlog
from src.core.config import get_settings
from src.core.container import build_container
from src.core.logging import setup_logging
from src.domain.models import FormDefinition, FormField

logger = structlog.get_logger()

CSM_CHECKLIST = FormDefinition(
    form_code="CSMChecklist",
    form_version="1",
    title="Contractor Safety Management Checklist",
    fields=[
        FormField("1.1", "Does the vendor have a written safety policy signed by management?",
                  "Signed HSE policy", f_score="2"),
        FormField("1.2", "Is the safety policy communicated to all employees?",
                  "Evidence of communication", f_score="1"),
        FormField("2.1", "Are hazard identification and risk assessments performed per job?",
                  "JSA / HIRA records", f_score="2", allow_attach=True),
        FormField("2.2", "Are permits to work used for high-risk activities?",
                  "PTW procedure and samples", f_score="2", allow_attach=True),
        FormField("3.1", "Are workers trained and certified for their tasks?",
                  "Training matrix and certificates", f_score="1", allow_attach=True),
        FormField("3.2", "Is PPE provided, inspected and replaced?",
                  "PPE register", f_score="1"),
        FormField("4.1", "Are incidents reported and investigated?",
                  "Incident log and investigation reports", f_score="2"),
        FormField("4.2", "Are corrective actions tracked to closure?",
                  "CAPA tracker", f_score="1"),
        FormField("5.1", "Is there an emergency response plan with drills?",
                  "ERP and drill records", f_score="1", required=False),
    ],
)


async def main() -> None:
    settings = get_settings()
    setup_logging(logging.INFO, json_logs=settings.json_logs)
    container = build_container(settings, probe=False)
    try:
        form_id = await container.forms.save_form(CSM_CHECKLIST)
        logger.info("form_seeded", form_code=CSM_CHECKLIST.form_code, form_id=form_id)
    finally:
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
