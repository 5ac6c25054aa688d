"""
Validate a workflow definition and print every structural problem

Usage:
    python -m scripts.validate_workflow --id WFD-xxxxxxxxxxxx
    python -m scripts.validate_workflow --file definition.json
"""
import argparse
import json
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError

from hrflow.domain.models import StepGraph
from hrflow.repositories.definition_repo import DefinitionRepository
from hrflow.services.definition_service import validate_definition_structure


def load_from_store(definition_id: str) -> Dict[str, Any]:
    definition = DefinitionRepository().get_definition(definition_id)
    if definition is None:
        raise SystemExit(f"Definition {definition_id} not found")
    print(f"Found definition: {definition.name} (v{definition.version})")
    return definition.model_dump(mode="json")


def load_from_file(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def validate(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Schema errors first; the structural checks only run on a parsable graph"""
    try:
        graph = StepGraph.model_validate({
            key: data[key]
            for key in ("steps", "transitions", "default_durations", "escalation_rules")
            if key in data
        })
    except PydanticValidationError as e:
        return [
            {"type": "SCHEMA_ERROR", "message": err["msg"], "path": ".".join(str(p) for p in err["loc"])}
            for err in e.errors()
        ]
    return validate_definition_structure(graph)


def print_summary(data: Dict[str, Any]) -> None:
    steps = data.get("steps", [])
    step_types: Dict[str, int] = {}
    for step in steps:
        step_types[step.get("type", "unknown")] = step_types.get(step.get("type", "unknown"), 0) + 1

    print(f"\nSTEPS ({len(steps)} total):")
    for step_type, count in step_types.items():
        print(f"   - {step_type}: {count}")
    print(f"TRANSITIONS: {len(data.get('transitions', []))}")


def main():
    parser = argparse.ArgumentParser(description="Validate a workflow definition")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--id", help="Definition ID in the database")
    source.add_argument("--file", help="Path to a JSON definition")
    args = parser.parse_args()

    data = load_from_store(args.id) if args.id else load_from_file(args.file)
    print_summary(data)

    problems = validate(data)
    if not problems:
        print("\nDEFINITION IS VALID")
        return

    print("\nERRORS:")
    for problem in problems:
        print(f"   - [{problem['type']}] {problem['message']} ({problem.get('path')})")
    sys.exit(1)


if __name__ == "__main__":
    main()
