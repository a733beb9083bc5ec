"""overlay-apply plan action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import Any, cast

from overlay_apply.builder import ManifestBuilder
from overlay_apply.config import StateSource
from overlay_apply.plan import Plan, create_plan
from overlay_apply.state import state_key

from . import selector
from .format import formatter

_LOGGER = logging.getLogger(__name__)

PLAN_KEYS = ["action", "resource", "depends_on"]


def print_plan(plan: Plan, output: str, show_diff: bool = False) -> None:
    """Print the changes of a plan in the requested format."""
    formatter(output, PLAN_KEYS).print(plan.to_dicts())
    if output != "text":
        return
    if show_diff:
        for step in plan.changes:
            for line in step.diff():
                print(line)
    summary = plan.summary()
    print(
        f"Plan: {summary['Create']} to create, {summary['Update']} to update, "
        f"{summary['Delete']} to delete, {summary['Noop']} unchanged."
    )


class PlanAction:
    """overlay-apply plan action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "plan",
                help="Show the changes needed to apply an overlay",
                description="""Render an overlay and compare it with the last
                    applied state, or the live cluster, printing the ordered
                    steps an apply would issue.""",
            ),
        )
        selector.add_overlay_flags(args)
        selector.add_state_flags(args)
        selector.add_cluster_flags(args)
        selector.add_output_flags(args)
        args.add_argument(
            "--diff",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Print a unified diff of every changed resource",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        overlay: str,
        path: pathlib.Path,
        state_dir: pathlib.Path | None,
        state_source: str,
        cluster_name: str,
        kubeconfig: str | None,
        context: str | None,
        output: str,
        diff: bool,
        **kwargs: Any,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        build_config = selector.build_config(path)
        plan_config = selector.plan_config(state_source)
        state_config = selector.state_config(state_dir, cluster_name)

        manifests = await ManifestBuilder(build_config.path).build(overlay)
        store = selector.state_store(state_config)
        key = state_key(state_config.cluster_name, overlay)
        cluster = None
        if plan_config.state_source == StateSource.LIVE:
            cluster = selector.cluster(kubeconfig, context)
        async with store.lock(key):
            state = await store.load(key)
        plan = await create_plan(manifests, state, plan_config, cluster)
        print_plan(plan, output, show_diff=diff)
