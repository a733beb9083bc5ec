"""overlay-apply apply action."""

from argparse import (
    ArgumentParser,
    ArgumentTypeError,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import asyncio
import contextlib
from collections.abc import Generator
import logging
import pathlib
import signal
from typing import Any, cast

from overlay_apply.applier import Applier, ApplyResult
from overlay_apply.builder import ManifestBuilder
from overlay_apply.config import ApplierConfig, ApplyPolicy
from overlay_apply.plan import create_plan
from overlay_apply.state import state_key

from . import selector
from .format import formatter
from .plan import print_plan

_LOGGER = logging.getLogger(__name__)

RESULT_KEYS = ["action", "resource", "outcome", "error"]


def _positive_int(value: str) -> int:
    if (result := int(value)) < 1:
        raise ArgumentTypeError(f"must be at least 1: {value}")
    return result


@contextlib.contextmanager
def cancel_on_interrupt(cancel: asyncio.Event) -> Generator[None, None, None]:
    """Set the cancel event on SIGINT instead of interrupting a step."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        _LOGGER.debug("Signal handlers are not supported, SIGINT aborts the apply")
        yield
        return
    try:
        yield
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def print_result(result: ApplyResult, output: str) -> None:
    """Print the per step outcome of an apply."""
    formatter(output, RESULT_KEYS).print(result.to_dicts())
    if result.rollback is not None:
        if output == "text":
            print("Rollback:")
        formatter(output, RESULT_KEYS).print(result.rollback.to_dicts())


class ApplyAction:
    """overlay-apply apply action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "apply",
                help="Apply an overlay to a cluster",
                description="""Render an overlay, plan it against the last
                    applied state and apply the changes in dependency order.
                    The applied state is only updated for changes that
                    succeeded.""",
            ),
        )
        selector.add_overlay_flags(args)
        selector.add_state_flags(args)
        selector.add_cluster_flags(args)
        selector.add_output_flags(args)
        args.add_argument(
            "--best-effort",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Keep applying steps that do not depend on a failed step",
        )
        args.add_argument(
            "--dry-run",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Print the plan without changing the cluster or the state",
        )
        args.add_argument(
            "--concurrency",
            type=_positive_int,
            default=1,
            help="Maximum number of independent steps applied at once",
        )
        args.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Seconds after which no further steps are started",
        )
        args.add_argument(
            "--rollback",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Revert applied steps when a step fails",
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
        best_effort: bool,
        dry_run: bool,
        concurrency: int,
        timeout: float | None,
        rollback: bool,
        **kwargs: Any,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        build_config = selector.build_config(path)
        plan_config = selector.plan_config(state_source)
        state_config = selector.state_config(state_dir, cluster_name)
        applier_config = ApplierConfig(
            policy=ApplyPolicy.BEST_EFFORT if best_effort else ApplyPolicy.STOP_ON_FIRST_ERROR,
            concurrency=concurrency,
            dry_run=dry_run,
            timeout=timeout,
            rollback_on_failure=rollback,
        )

        # Any load or patch error is raised before the cluster is touched
        manifests = await ManifestBuilder(build_config.path).build(overlay)
        cluster = selector.cluster(kubeconfig, context)
        store = selector.state_store(state_config)
        key = state_key(state_config.cluster_name, overlay)
        cancel = asyncio.Event()
        async with store.lock(key):
            state = await store.load(key)
            plan = await create_plan(manifests, state, plan_config, cluster)
            with cancel_on_interrupt(cancel):
                result = await Applier(cluster, applier_config).apply(
                    plan, state, cancel
                )
            if dry_run:
                print_plan(plan, output)
                return
            if result.state is not state:
                await store.save(result.state)
        print_result(result, output)
        result.raise_for_status()
