"""
beatflow step / beatflow workflows - inspect workflow descriptors and states.
"""

from beatflow.lib.config import BeatflowConfig
from beatflow.lib.validate import ValidationError
from beatflow.workflow import fsm, model


def load_catalog(config: BeatflowConfig) -> dict[str, model.WorkflowDescriptor]:
    """Built-in descriptors plus any from WORKFLOWS_FILE.

    Raises:
        ValidationError: If the workflows file fails schema validation
        FileNotFoundError: If the workflows file is missing
    """
    extra = []
    if config.workflows_file:
        extra = model.load_workflow_descriptors(config.workflows_file)
    return model.workflow_catalog(extra)


def _catalog_or_error(config: BeatflowConfig) -> dict[str, model.WorkflowDescriptor] | None:
    try:
        return load_catalog(config)
    except (ValidationError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        return None


def cmd_step(args, config: BeatflowConfig) -> int:
    """Resolve a state name against a workflow."""
    catalog = _catalog_or_error(config)
    if catalog is None:
        return 2

    workflow_id = args.workflow or model.DEFAULT_PROFILE_ID
    descriptor = catalog.get(workflow_id)
    if descriptor is None:
        print(f"ERROR: Unknown workflow '{workflow_id}'")
        return 2

    resolved = model.resolve_step(args.state, descriptor.states)
    runtime = model.derive_workflow_runtime_state(descriptor, args.state)

    print(f"State:    {args.state}")
    print(f"Workflow: {descriptor.id} ({descriptor.mode})")
    if resolved is None:
        print("Step:     -")
    else:
        print(f"Step:     {resolved.step} ({resolved.phase.value})")
        print(f"Owner:    {descriptor.owner_for(resolved.step)}")
    print(f"Rollback: {model.rollback_active_phase(args.state, descriptor.states)}")
    print(f"Agent claimable:       {'yes' if runtime.is_agent_claimable else 'no'}")
    print(f"Requires human action: {'yes' if runtime.requires_human_action else 'no'}")

    if args.state in descriptor.all_states():
        targets = fsm.next_states(descriptor, args.state)
        print(f"Next:     {', '.join(targets) if targets else '-'}")

    if args.to:
        allowed = fsm.can_transition(descriptor, args.state, args.to)
        print(f"Move to {args.to}: {'allowed' if allowed else 'not allowed'}")
        return 0 if allowed else 1
    return 0


def cmd_workflows(args, config: BeatflowConfig) -> int:
    """List known workflow descriptors."""
    catalog = _catalog_or_error(config)
    if catalog is None:
        return 2

    for descriptor in catalog.values():
        print(f"{descriptor.id}  [{descriptor.mode}]")
        if descriptor.description:
            print(f"  {descriptor.description}")
        steps = [
            f"{step}*" if descriptor.owner_for(step) == "human" else step
            for step in descriptor.states
        ]
        print(f"  steps: {' -> '.join(steps)}")
        print(f"  terminal: {', '.join(descriptor.terminal_states)}")
    print()
    print("* human-owned step")
    return 0
