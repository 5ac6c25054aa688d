"""Definition Service - Workflow definition management business logic"""
from typing import Any, Dict, List, Optional, Set, Tuple
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import (
    ActorContext, WorkflowDefinition, DefinitionSnapshot, StepGraph,
    ParallelStepDefinition, ConditionalStepDefinition
)
from ..domain.enums import WorkflowModule, AuditEventType, WILDCARD_STEP, END_STEP
from ..domain.errors import (
    DefinitionNotFoundError, DefinitionValidationError, SystemDefinitionError,
    PermissionDeniedError, DuplicateSlugError
)
from ..repositories.definition_repo import DefinitionRepository
from ..engine.permission_guard import PermissionGuard
from ..engine.audit_writer import AuditWriter
from ..utils.idgen import generate_definition_id, generate_slug
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Edits to these fields produce a new structural version
STRUCTURAL_FIELDS = ("steps", "transitions")

# Captured in snapshots without bumping the version
POLICY_FIELDS = ("default_durations", "escalation_rules")

UPDATABLE_FIELDS = (
    "name", "description", "icon", "module", "category", "steps", "transitions",
    "default_durations", "reminder_schedule", "escalation_rules", "is_active",
    "is_template", "country_code"
)


def validate_definition_structure(graph: StepGraph) -> List[Dict[str, Any]]:
    """
    Validate the step/transition graph of a definition

    Returns:
        List of problems ({type, message, path}); empty when valid
    """
    errors: List[Dict[str, Any]] = []

    if not graph.steps:
        errors.append({
            "type": "EMPTY_STEPS",
            "message": "Workflow must have at least one step",
            "path": "steps"
        })
        return errors

    top_level_ids: List[str] = [step.id for step in graph.steps]
    seen: Set[str] = set()

    for i, step in enumerate(graph.steps):
        ids = [step.id]
        if isinstance(step, ParallelStepDefinition):
            ids.extend(child.id for child in step.parallel_steps)
            if not step.parallel_steps:
                errors.append({
                    "type": "PARALLEL_NO_CHILDREN",
                    "message": f"Parallel step {step.id} must have at least one child step",
                    "path": f"steps[{i}].parallel_steps"
                })

        for step_id in ids:
            if step_id in seen:
                errors.append({
                    "type": "DUPLICATE_STEP_ID",
                    "message": f"Duplicate step id: {step_id}",
                    "path": f"steps[{i}]"
                })
            seen.add(step_id)
            if step_id in (WILDCARD_STEP, END_STEP):
                errors.append({
                    "type": "RESERVED_STEP_ID",
                    "message": f"Step id {step_id} is reserved",
                    "path": f"steps[{i}].id"
                })

        if isinstance(step, ConditionalStepDefinition):
            config = step.conditional_config
            if not config.condition.conditions:
                errors.append({
                    "type": "CONDITIONAL_NO_CONDITION",
                    "message": f"Conditional step {step.id} must have a condition",
                    "path": f"steps[{i}].conditional_config.condition"
                })
            for key in ("true_step_id", "false_step_id"):
                target = getattr(config, key)
                if target and target != END_STEP and target not in top_level_ids:
                    errors.append({
                        "type": "INVALID_BRANCH_TARGET",
                        "message": f"Conditional step {step.id} references unknown step: {target}",
                        "path": f"steps[{i}].conditional_config.{key}"
                    })

    for j, transition in enumerate(graph.transitions):
        if transition.from_step_id != WILDCARD_STEP and transition.from_step_id not in top_level_ids:
            errors.append({
                "type": "INVALID_TRANSITION_SOURCE",
                "message": f"Transition {transition.id} references unknown step: {transition.from_step_id}",
                "path": f"transitions[{j}].from_step_id"
            })
        if transition.to_step_id != END_STEP and transition.to_step_id not in top_level_ids:
            errors.append({
                "type": "INVALID_TRANSITION_TARGET",
                "message": f"Transition {transition.id} references unknown step: {transition.to_step_id}",
                "path": f"transitions[{j}].to_step_id"
            })

    if not errors:
        cycle = _find_cycle(graph, top_level_ids)
        if cycle:
            errors.append({
                "type": "CYCLE_DETECTED",
                "message": f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
                "path": "transitions"
            })

    return errors


def _find_cycle(graph: StepGraph, step_ids: List[str]) -> Optional[List[str]]:
    """Path of the first cycle found, considering every edge advancement could take"""
    edges: Dict[str, List[str]] = {step_id: [] for step_id in step_ids}

    def add_edge(source: str, target: Optional[str]) -> None:
        if target and target != END_STEP and target not in edges[source]:
            edges[source].append(target)

    for index, step in enumerate(graph.steps):
        if index + 1 < len(graph.steps):
            add_edge(step.id, graph.steps[index + 1].id)
        if isinstance(step, ConditionalStepDefinition):
            add_edge(step.id, step.conditional_config.true_step_id)
            add_edge(step.id, step.conditional_config.false_step_id)

    for transition in graph.transitions:
        if transition.from_step_id == WILDCARD_STEP:
            for source in step_ids:
                if source != transition.to_step_id:
                    add_edge(source, transition.to_step_id)
        else:
            add_edge(transition.from_step_id, transition.to_step_id)

    # Iterative DFS with white/grey/black colouring
    state: Dict[str, int] = {step_id: 0 for step_id in step_ids}
    for root in step_ids:
        if state[root]:
            continue
        stack: List[Tuple[str, int]] = [(root, 0)]
        path: List[str] = [root]
        state[root] = 1
        while stack:
            node, edge_index = stack[-1]
            if edge_index < len(edges[node]):
                stack[-1] = (node, edge_index + 1)
                target = edges[node][edge_index]
                if state[target] == 1:
                    return path[path.index(target):] + [target]
                if state[target] == 0:
                    state[target] = 1
                    stack.append((target, 0))
                    path.append(target)
            else:
                state[node] = 2
                stack.pop()
                path.pop()
    return None


class DefinitionService:
    """Service for workflow definition operations"""

    def __init__(self):
        self.repo = DefinitionRepository()
        self.permission_guard = PermissionGuard()
        self.audit_writer = AuditWriter()

    # =========================================================================
    # Queries
    # =========================================================================

    def list_definitions(
        self,
        actor: ActorContext,
        module: Optional[WorkflowModule] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_template: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """List definitions visible to the caller's tenant"""
        items = self.repo.list_definitions(
            actor.tenant_id, module, category, search, is_active, is_template,
            skip=offset, limit=limit
        )
        total = self.repo.count_definitions(actor.tenant_id, module, category, search, is_active, is_template)
        return {
            "data": items,
            "total": total,
            "has_more": offset + len(items) < total
        }

    def get_definition(self, actor: ActorContext, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID (own tenant or system)"""
        return self.repo.get_visible_definition_or_raise(definition_id, actor.tenant_id)

    def get_by_slug(self, actor: ActorContext, slug: str) -> WorkflowDefinition:
        """Get definition by slug (own tenant or system)"""
        definition = self.repo.get_by_slug(slug, actor.tenant_id)
        if not definition:
            raise DefinitionNotFoundError(f"Workflow definition with slug {slug} not found")
        return definition

    # =========================================================================
    # Commands
    # =========================================================================

    def create_definition(self, actor: ActorContext, payload: Dict[str, Any]) -> WorkflowDefinition:
        """
        Create a tenant-owned definition

        The slug is derived from the name; the structure is validated and
        captured as version 1.
        """
        self._ensure_hr(actor, "create workflow definitions")

        now = utc_now()
        fields = {key: payload[key] for key in UPDATABLE_FIELDS if key in payload}
        slug = generate_slug(fields.get("name", ""))

        definition = self._build(
            {
                **fields,
                "definition_id": generate_definition_id(),
                "tenant_id": actor.tenant_id,
                "slug": slug,
                "version": 1,
                "is_system": False,
                "parent_id": None,
                "created_by": actor.user_id,
                "created_at": now,
                "updated_at": now,
            }
        )

        if self.repo.slug_exists(slug, actor.tenant_id):
            raise DuplicateSlugError(f"Slug {slug} is already in use", details={"slug": slug})

        self.repo.create_definition(definition)
        self.repo.save_snapshot(self._snapshot(definition))
        self.audit_writer.write_definition_event(AuditEventType.DEFINITION_CREATED, definition, actor)

        logger.info(
            f"Created workflow definition {definition.definition_id}",
            extra={"definition_id": definition.definition_id, "tenant_id": actor.tenant_id, "actor_id": actor.user_id}
        )
        return definition

    def update_definition(
        self,
        actor: ActorContext,
        definition_id: str,
        updates: Dict[str, Any]
    ) -> WorkflowDefinition:
        """
        Apply a partial update to a tenant-owned definition

        Changing steps or transitions bumps the version and captures a new
        snapshot; running instances keep interpreting the version they
        started on.
        """
        self._ensure_hr(actor, "update workflow definitions")
        current = self._get_owned(actor, definition_id, "modified")

        changes = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
        structural = any(key in changes for key in STRUCTURAL_FIELDS)
        policy = any(key in changes for key in POLICY_FIELDS)

        candidate = self._build({
            **current.model_dump(),
            **changes,
            "version": current.version + 1 if structural else current.version,
        })

        dumped = candidate.model_dump()
        set_doc = {key: dumped[key] for key in changes}
        if structural:
            set_doc["version"] = candidate.version

        updated = self.repo.update_definition(definition_id, set_doc, expected_version=current.version)

        if structural or policy:
            self.repo.save_snapshot(self._snapshot(updated))

        self.audit_writer.write_definition_event(
            AuditEventType.DEFINITION_UPDATED, updated, actor,
            details={"fields": sorted(changes.keys()), "version_bumped": structural}
        )
        return updated

    def clone_definition(self, actor: ActorContext, definition_id: str, new_name: str) -> WorkflowDefinition:
        """Copy a visible definition into a new inactive tenant-owned definition"""
        self._ensure_hr(actor, "clone workflow definitions")
        source = self.repo.get_visible_definition_or_raise(definition_id, actor.tenant_id)

        now = utc_now()
        clone = self._build({
            **source.model_dump(),
            "definition_id": generate_definition_id(),
            "tenant_id": actor.tenant_id,
            "name": new_name,
            "slug": generate_slug(new_name),
            "version": 1,
            "parent_id": source.definition_id,
            "is_template": False,
            "is_active": False,
            "is_system": False,
            "created_by": actor.user_id,
            "created_at": now,
            "updated_at": now,
        })

        if self.repo.slug_exists(clone.slug, actor.tenant_id):
            raise DuplicateSlugError(f"Slug {clone.slug} is already in use", details={"slug": clone.slug})

        self.repo.create_definition(clone)
        self.repo.save_snapshot(self._snapshot(clone))
        self.audit_writer.write_definition_event(
            AuditEventType.DEFINITION_CLONED, clone, actor, details={"source_id": source.definition_id}
        )
        return clone

    def delete_definition(self, actor: ActorContext, definition_id: str) -> WorkflowDefinition:
        """Soft-delete: the definition becomes inactive"""
        self._ensure_hr(actor, "delete workflow definitions")
        self._get_owned(actor, definition_id, "deleted")

        deleted = self.repo.update_definition(definition_id, {"is_active": False})
        self.audit_writer.write_definition_event(AuditEventType.DEFINITION_DELETED, deleted, actor)
        return deleted

    # =========================================================================
    # Helpers
    # =========================================================================

    def _ensure_hr(self, actor: ActorContext, what: str) -> None:
        if not self.permission_guard.can_manage_definitions(actor):
            raise PermissionDeniedError(f"Only HR can {what}")

    def _get_owned(self, actor: ActorContext, definition_id: str, verb: str) -> WorkflowDefinition:
        definition = self.repo.get_visible_definition_or_raise(definition_id, actor.tenant_id)
        if definition.is_system:
            raise SystemDefinitionError(
                f"System workflow definitions cannot be {verb}",
                details={"definition_id": definition_id}
            )
        if definition.tenant_id != actor.tenant_id:
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")
        return definition

    def _build(self, data: Dict[str, Any]) -> WorkflowDefinition:
        """Parse and structurally validate a definition"""
        try:
            definition = WorkflowDefinition.model_validate(data)
        except PydanticValidationError as e:
            raise DefinitionValidationError(
                "Invalid workflow definition",
                details={"errors": [
                    {
                        "type": "SCHEMA_ERROR",
                        "message": err["msg"],
                        "path": ".".join(str(part) for part in err["loc"])
                    }
                    for err in e.errors()
                ]}
            )

        errors = validate_definition_structure(definition)
        if errors:
            raise DefinitionValidationError(
                f"Invalid workflow definition: {errors[0]['message']}",
                details={"errors": errors}
            )
        return definition

    def _snapshot(self, definition: WorkflowDefinition) -> DefinitionSnapshot:
        return DefinitionSnapshot(
            definition_id=definition.definition_id,
            version=definition.version,
            steps=definition.steps,
            transitions=definition.transitions,
            default_durations=definition.default_durations,
            escalation_rules=definition.escalation_rules,
            captured_at=utc_now()
        )
