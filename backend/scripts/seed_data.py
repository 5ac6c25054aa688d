"""
Seed Data Script - System workflow definitions and a sample employee hierarchy
Run: python -m scripts.seed_data
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from typing import Any, Dict, List

from hrflow.repositories.mongo_client import create_indexes
from hrflow.repositories.definition_repo import DefinitionRepository
from hrflow.repositories.employee_repo import EmployeeRepository
from hrflow.domain.models import WorkflowDefinition, DefinitionSnapshot, Employee
from hrflow.domain.enums import WorkflowModule
from hrflow.services.definition_service import validate_definition_structure
from hrflow.utils.idgen import generate_definition_id
from hrflow.utils.time import utc_now

SAMPLE_TENANT = "tenant-demo"


ANNUAL_REVIEW: Dict[str, Any] = {
    "name": "Annual Review (Standard)",
    "slug": "annual-review-standard",
    "description": "Self assessment, manager review and HR calibration.",
    "module": WorkflowModule.PERFORMANCE.value,
    "category": "performance",
    "steps": [
        {
            "id": "self_assessment",
            "type": "form",
            "name": "Self Assessment",
            "assignment_role": "employee",
            "default_duration_days": 14
        },
        {
            "id": "manager_review",
            "type": "review",
            "name": "Manager Review",
            "assignment_role": "manager",
            "default_duration_days": 10
        },
        {
            "id": "score_gate",
            "type": "conditional",
            "name": "Needs Calibration?",
            "conditional_config": {
                "condition": {
                    "logic": "AND",
                    "conditions": [{"type": "score_check", "score_field": "overall_score", "score_threshold": 4.5}]
                },
                "true_step_id": "calibration",
                "false_step_id": "acknowledge"
            }
        },
        {
            "id": "calibration",
            "type": "approval",
            "name": "Skip-Level Calibration",
            "assignment_role": "skip_level_manager",
            "default_duration_days": 5,
            "approval_config": {"require_comment": True, "escalate_after_days": 3}
        },
        {
            "id": "acknowledge",
            "type": "form",
            "name": "Employee Acknowledgement",
            "assignment_role": "employee",
            "default_duration_days": 7,
            "can_skip": True
        }
    ],
    "transitions": [
        {"id": "t_calibration_rejected", "from_step_id": "calibration", "to_step_id": "END", "trigger": "rejected"}
    ],
    "escalation_rules": [
        {"trigger_days_overdue": 3, "escalate_to": "manager"},
        {"trigger_days_overdue": 7, "escalate_to": "skip_level_manager", "auto_reassign": True}
    ]
}


TRAINING_REQUEST: Dict[str, Any] = {
    "name": "Training Request",
    "slug": "training-request",
    "description": "Employee request approved by manager; costly trainings also go to HR.",
    "module": WorkflowModule.TRAINING.value,
    "category": "training",
    "steps": [
        {"id": "request", "type": "form", "name": "Request Details", "assignment_role": "employee"},
        {
            "id": "manager_approval",
            "type": "approval",
            "name": "Manager Approval",
            "assignment_role": "manager",
            "default_duration_days": 3
        },
        {
            "id": "budget_approval",
            "type": "approval",
            "name": "Budget Approval",
            "assignment_role": "skip_level_manager",
            "default_duration_days": 5
        },
        {"id": "confirmation", "type": "notification", "name": "Confirmation"}
    ],
    "transitions": [
        {"id": "t_manager_rejected", "from_step_id": "manager_approval", "to_step_id": "END", "trigger": "rejected"},
        {
            "id": "t_cheap_training",
            "from_step_id": "manager_approval",
            "to_step_id": "confirmation",
            "trigger": "approved",
            "conditions": [{"type": "field_check", "field": "cost", "operator": "lt", "value": 1000}]
        },
        {"id": "t_budget_rejected", "from_step_id": "budget_approval", "to_step_id": "END", "trigger": "rejected"}
    ]
}


EMPLOYEES: List[Dict[str, Any]] = [
    {"employee_id": "emp-ceo", "first_name": "Ines", "last_name": "Marchand", "job_title": "CEO"},
    {"employee_id": "emp-hrd", "first_name": "Karim", "last_name": "Diallo", "job_title": "HR Director",
     "reporting_manager_id": "emp-ceo"},
    {"employee_id": "emp-eng-lead", "first_name": "Sofia", "last_name": "Rossi", "job_title": "Engineering Lead",
     "reporting_manager_id": "emp-ceo"},
    {"employee_id": "emp-dev-1", "first_name": "Tom", "last_name": "Becker", "job_title": "Developer",
     "reporting_manager_id": "emp-eng-lead"},
    {"employee_id": "emp-dev-2", "first_name": "Aya", "last_name": "Sato", "job_title": "Developer",
     "reporting_manager_id": "emp-eng-lead"},
]


def seed_system_definitions() -> None:
    """Create the system definitions and their version 1 snapshots"""
    repo = DefinitionRepository()

    for template in (ANNUAL_REVIEW, TRAINING_REQUEST):
        if repo.slug_exists(template["slug"], None):
            print(f"Definition {template['slug']} already exists. Skipping.")
            continue

        now = utc_now()
        definition = WorkflowDefinition.model_validate({
            **template,
            "definition_id": generate_definition_id(),
            "tenant_id": None,
            "version": 1,
            "is_system": True,
            "is_template": True,
            "created_by": "system",
            "created_at": now,
            "updated_at": now,
        })

        problems = validate_definition_structure(definition)
        if problems:
            raise SystemExit(f"Seed definition {template['slug']} is invalid: {problems}")

        repo.create_definition(definition)
        repo.save_snapshot(DefinitionSnapshot(
            definition_id=definition.definition_id,
            version=1,
            steps=definition.steps,
            transitions=definition.transitions,
            default_durations=definition.default_durations,
            escalation_rules=definition.escalation_rules,
            captured_at=now
        ))
        print(f"Created system definition: {definition.slug} ({definition.definition_id})")


def seed_employees(tenant_id: str = SAMPLE_TENANT) -> None:
    """Create a small reporting hierarchy in the sample tenant"""
    repo = EmployeeRepository()
    for data in EMPLOYEES:
        repo.upsert_employee(Employee(tenant_id=tenant_id, email=f"{data['employee_id']}@example.com", **data))
    print(f"Upserted {len(EMPLOYEES)} employees in {tenant_id}")


def main():
    print("=== Seeding database ===")
    print("-" * 40)

    create_indexes()
    seed_system_definitions()
    seed_employees()

    print("-" * 40)
    print("Done!")


if __name__ == "__main__":
    main()
