"""
Default checklist templates, created on first start when no template exists
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.models.template import AuditTemplate, TemplateStatus
from backend.services.audit_scoring import ChecklistTemplate
from backend.utils.validators import validate_section_weights

logger = logging.getLogger(__name__)


def _item(id, text, type="pass_fail", points=10, critical=False, evidence="none", help_text=""):
    return {
        "id": id,
        "text": text,
        "type": type,
        "points": points,
        "critical": critical,
        "evidence_required": evidence,
        "help_text": help_text,
    }


DEFAULT_TEMPLATES = [
    {
        "name": "Branch Daily Hygiene",
        "code": "TPL-BR-DAILY",
        "entity_type": "branch",
        "scoring_config": {"pass_threshold": 70, "critical_fail_rule": True, "weighted": True, "min_completion": 95},
        "sections": [
            {
                "id": "br-floor",
                "name": "Floor & Surface Cleanliness",
                "weight": 40,
                "items": [
                    _item("br-floor-1", "Are all floors clean and free of debris?", points=10, critical=True,
                          help_text="Check dining area, kitchen, and entrances"),
                    _item("br-floor-2", "Are counter surfaces sanitized?", points=8, critical=True),
                    _item("br-floor-3", "Are tables and chairs clean?", points=7),
                ],
            },
            {
                "id": "br-food",
                "name": "Food Safety",
                "weight": 40,
                "items": [
                    _item("br-food-1", "Are hot items stored above 60°C?", type="numeric", points=10, critical=True,
                          help_text="Use thermometer. Record actual temperature."),
                    _item("br-food-2", "Are cold items stored below 5°C?", type="numeric", points=10, critical=True,
                          help_text="Check refrigerators and cold display cases."),
                    _item("br-food-3", "Are food items properly labeled with dates?", points=8, critical=True),
                ],
            },
            {
                "id": "br-staff",
                "name": "Staff Hygiene",
                "weight": 20,
                "items": [
                    _item("br-staff-1", "Are staff wearing clean uniforms?", points=5),
                    _item("br-staff-2", "Are handwashing stations stocked and accessible?", points=7, critical=True,
                          evidence="required_1", help_text="Photo of each handwashing station"),
                ],
            },
        ],
    },
    {
        "name": "BCK HACCP Monthly",
        "code": "TPL-BCK-HACCP",
        "entity_type": "bck",
        "scoring_config": {"pass_threshold": 80, "critical_fail_rule": True, "weighted": True, "min_completion": 95},
        "sections": [
            {
                "id": "bck-ccp",
                "name": "Critical Control Points",
                "weight": 50,
                "items": [
                    _item("bck-ccp-1", "Are all CCP temperature logs complete for the last 30 days?", points=15,
                          critical=True, evidence="required_1", help_text="All 7 CCPs must have complete logs"),
                    _item("bck-ccp-2", "Are corrective actions documented for any CCP deviations?", points=12,
                          critical=True, evidence="required_1"),
                    _item("bck-ccp-3", "What is the current cooking temperature for poultry?", type="numeric",
                          points=10, critical=True, help_text="Must be above 74°C"),
                ],
            },
            {
                "id": "bck-san",
                "name": "Sanitation & Hygiene",
                "weight": 30,
                "items": [
                    _item("bck-san-1", "Are production lines clean before shift start?", points=10, critical=True,
                          evidence="required_2", help_text="Photo before and after cleaning"),
                    _item("bck-san-2", "Are sanitation chemicals stored correctly and labeled?", points=8, critical=True),
                ],
            },
            {
                "id": "bck-doc",
                "name": "Documentation",
                "weight": 20,
                "items": [
                    _item("bck-doc-1", "Is the HACCP plan current and accessible?", points=8, critical=True),
                    _item("bck-doc-2", "Are staff training records up to date?", points=7),
                ],
            },
        ],
    },
    {
        "name": "Supplier Initial Approval",
        "code": "TPL-SUP-APPROVAL",
        "entity_type": "supplier",
        "scoring_config": {"pass_threshold": 80, "critical_fail_rule": True, "weighted": True, "min_completion": 95},
        "sections": [
            {
                "id": "sup-fac",
                "name": "Facility Assessment",
                "weight": 25,
                "items": [
                    _item("sup-fac-1", "Is the facility clean and well-maintained?", points=10, critical=True,
                          evidence="required_2", help_text="Photo of main production area and storage"),
                    _item("sup-fac-2", "Is pest control program active and documented?", points=8, critical=True,
                          evidence="required_1"),
                    _item("sup-fac-3", "Are waste disposal systems adequate?", points=7),
                ],
            },
            {
                "id": "sup-doc",
                "name": "Documentation & Certifications",
                "weight": 25,
                "items": [
                    _item("sup-doc-1", "Are all required licenses and permits valid?", points=10, critical=True,
                          evidence="required_1", help_text="Check expiry dates on all documents"),
                    _item("sup-doc-2", "Does the supplier have HACCP certification?", points=10, critical=True,
                          evidence="required_1"),
                    _item("sup-doc-3", "Is Halal certification current?", points=8, critical=True, evidence="required_1"),
                ],
            },
            {
                "id": "sup-prod",
                "name": "Production & Quality Control",
                "weight": 30,
                "items": [
                    _item("sup-prod-1", "Are production processes properly documented?", points=10, critical=True),
                    _item("sup-prod-2", "What is the facility's traceability system?", type="text", points=8,
                          critical=True,
                          help_text="Describe how they track batches from raw material to finished product"),
                    _item("sup-prod-3", "Are quality control tests performed regularly?", points=7),
                ],
            },
            {
                "id": "sup-store",
                "name": "Storage & Transportation",
                "weight": 20,
                "items": [
                    _item("sup-store-1", "Are storage conditions appropriate for product type?", points=8,
                          critical=True, evidence="required_1", help_text="Check temperature in cold storage"),
                    _item("sup-store-2", "Are transportation vehicles clean and temperature-controlled?", points=7),
                ],
            },
        ],
    },
]


async def seed_default_templates(db: AsyncSession) -> int:
    """Create the default templates if the table is empty; returns how many were added"""
    existing = await db.execute(select(AuditTemplate.id).limit(1))
    if existing.scalar_one_or_none() is not None:
        return 0

    for definition in DEFAULT_TEMPLATES:
        checklist = {"sections": definition["sections"]}
        # Malformed defaults raise here
        parsed = ChecklistTemplate(sections=definition["sections"], scoring=definition["scoring_config"])
        validate_section_weights(s.weight for s in parsed.sections)
        db.add(AuditTemplate(
            name=definition["name"],
            code=definition["code"],
            entity_type=definition["entity_type"],
            version=1,
            status=TemplateStatus.ACTIVE,
            checklist=checklist,
            scoring_config=definition["scoring_config"],
        ))
    await db.commit()
    logger.info(f"Seeded {len(DEFAULT_TEMPLATES)} default audit templates")
    return len(DEFAULT_TEMPLATES)
