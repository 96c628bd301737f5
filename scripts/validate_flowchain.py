"""Script to validate a FlowChain definition

Usage:
    python scripts/validate_flowchain.py path/to/definition.json
    python scripts/validate_flowchain.py --flow-chain-id FC-abc123 --version 2
"""
import argparse
import json
import sys
sys.path.insert(0, ".")

from flowchain.engine.definition_validator import DefinitionValidator
from flowchain.domain.models import FlowChainDefinition


def load_payload(args) -> dict:
    if args.path:
        with open(args.path, encoding="utf-8") as f:
            return json.load(f)

    from flowchain.repositories.definition_repo import DefinitionRepository
    version = DefinitionRepository().get_version_or_raise(args.flow_chain_id, args.version)
    return version.definition.model_dump(mode="json")


def print_summary(definition: FlowChainDefinition) -> None:
    print("=" * 60)
    print(f"FLOWCHAIN: {definition.name}")
    print("=" * 60)

    for stage in definition.ordered_stages():
        print(f"\n{stage.order}. [{stage.execution_mode.value}] {stage.name} ({stage.stage_id})")
        for step in stage.ordered_steps():
            roles = ", ".join(
                f"{r.role_id}{'' if r.required else ' (advisory)'}" for r in step.assigned_roles
            )
            print(f"   • {step.name} [{step.action.value}, {step.approval_policy.value}] roles: {roles}")
            if step.asset_type or step.activation_predicate:
                print(f"     only if asset_type={step.asset_type and step.asset_type.value} "
                      f"predicate={step.activation_predicate}")
            for t in step.transitions:
                print(f"     --[{t.condition.value}]--> {t.target}")
        for t in stage.transitions:
            print(f"   --[{t.condition.value}{':' + t.predicate_key if t.predicate_key else ''}]--> {t.target}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a FlowChain definition")
    parser.add_argument("path", nargs="?", help="JSON file with the definition")
    parser.add_argument("--flow-chain-id", help="Validate a published version instead")
    parser.add_argument("--version", type=int, default=1)
    args = parser.parse_args()

    if not args.path and not args.flow_chain_id:
        parser.error("give a JSON file or --flow-chain-id")

    payload = load_payload(args)
    result = DefinitionValidator().validate_payload(payload)

    if not any(e["type"] == "SCHEMA_ERROR" for e in result["errors"]):
        print_summary(FlowChainDefinition.model_validate(payload))

    print("\n" + "=" * 60)
    print("VALIDATION RESULTS")
    print("=" * 60)
    for error in result["errors"]:
        print(f"❌ {error['type']}: {error['message']} ({error['path']})")
    for warning in result["warnings"]:
        print(f"⚠️  {warning['type']}: {warning['message']}")
    if result["is_valid"]:
        print("✅ Definition is valid")

    return 0 if result["is_valid"] else 1


if __name__ == "__main__":
    sys.exit(main())
