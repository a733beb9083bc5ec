"""overlay-apply build action."""

from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import Any, cast

from overlay_apply.builder import ManifestBuilder

from . import selector

_LOGGER = logging.getLogger(__name__)


class BuildAction:
    """overlay-apply build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Render the manifest set of an overlay",
                description="""Render the resolved manifest set of an overlay as
                    a multi-document yaml stream, similar to kustomize build.""",
            ),
        )
        selector.add_overlay_flags(args)
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(
        self,
        overlay: str,
        path: pathlib.Path,
        output_file: str,
        **kwargs: Any,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = selector.build_config(path)
        manifests = await ManifestBuilder(config.path).build(overlay)
        with open(output_file, "w") as file:
            print(manifests.yaml(), end="", file=file)
