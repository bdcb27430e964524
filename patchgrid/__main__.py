#!/usr/bin/env python3

import argparse
import importlib
import importlib.util
import os
import sys

from patchgrid import __description__, __version__


def get_module(name, package=None):
    absolute_name = importlib.util.resolve_name(name, package)
    if absolute_name in sys.modules:
        return sys.modules[absolute_name]

    path, parent_module, child_name, spec = None, None, None, None
    if "." in absolute_name:
        parent_name, _, child_name = absolute_name.rpartition(".")
        parent_module = get_module(parent_name)
        path = parent_module.__spec__.submodule_search_locations
    for finder in sys.meta_path:
        spec = finder.find_spec(absolute_name, path)
        if spec is not None:
            break
    if spec is None:
        raise ModuleNotFoundError(f"No module named {absolute_name!r}", name=absolute_name)
    module = importlib.util.module_from_spec(spec)
    if path is not None:
        setattr(parent_module, child_name, module)
    return module


def filepath_from_module(module):
    return os.path.dirname(get_module(module).__file__)


def parse_grid(value):
    """
    Parse a ``TxHxW`` grid descriptor

    :param value: Grid as frames, patch rows and patch cols joined by ``x``, e.g. ``1x28x28``.
    :type value: ```str```

    :return: the parsed grid
    :rtype: ```tuple[int, int, int]```
    """
    parts = value.lower().split("x")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Expected a grid of the form TxHxW but got {value!r}")
    try:
        grid = tuple(int(part) for part in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Grid dimensions must be integers but got {value!r}") from None
    if any(dim < 0 for dim in grid):
        raise argparse.ArgumentTypeError(f"Grid dimensions must be non-negative but got {value!r}")
    return grid


def _build_parser():
    """
    Parser builder

    :return: instanceof argparse.ArgumentParser
    :rtype: ```argparse.ArgumentParser```
    """
    parser = argparse.ArgumentParser(
        prog="python3 -m patchgrid",
        description=__description__,
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s {__version__}".format(__version__=__version__),
    )
    parser.add_argument(
        "-s",
        "--search",
        action="append",
        default=["patchgrid.models"],
        help="Alternative filepath(s) or fully-qualified name (FQN) to use models from.",
    )

    subparsers: argparse._SubParsersAction[argparse.ArgumentParser] = parser.add_subparsers()
    subparsers.required = True
    subparsers.dest = "command"

    ######
    # ls #
    ######
    subparsers.add_parser(
        "ls",
        help="List installed models",
    )

    #######
    # run #
    #######
    run_parser: argparse.ArgumentParser = subparsers.add_parser(
        "run",
        help="Run the preprocessing demo of the specified model",
    )
    run_parser.add_argument(
        "-n",
        "--model-name",
        required=True,
        help="Model name",
    )
    run_parser.add_argument(
        "-g",
        "--grid",
        action="append",
        type=parse_grid,
        default=[],
        dest="image_grids",
        help="Image grid as TxHxW patches (repeatable).",
    )
    run_parser.add_argument(
        "-v",
        "--video-grid",
        action="append",
        type=parse_grid,
        default=[],
        dest="video_grids",
        help="Video grid as TxHxW patches (repeatable).",
    )

    return parser


def main(cli_argv=None, return_args=False):
    """
    Run the CLI parser

    :param cli_argv: CLI arguments. If None uses `sys.argv`.
    :type cli_argv: ```None | list[str]```

    :param return_args: Primarily use is for tests. Returns the args rather than executing anything.
    :type return_args: ```bool```

    :return: the args if `return_args`, else None
    :rtype: ```None | Namespace```
    """
    _parser: argparse.ArgumentParser = _build_parser()
    args: argparse.Namespace = _parser.parse_args(args=cli_argv)
    if return_args:
        return args

    if args.command == "ls":
        search_dirs = frozenset(
            search_path if os.path.isdir(search_path) else filepath_from_module(search_path)
            for search_path in args.search
        )
        print(
            "\n".join(
                sorted(
                    f"- {d}"
                    for search_dir in search_dirs
                    for d in os.listdir(search_dir)
                    if os.path.isdir(os.path.join(search_dir, d)) and d not in frozenset(("__pycache__",))
                )
            )
        )
        return None
    elif args.command == "run":
        for search_path in sorted(frozenset(args.search)):
            if not os.path.isdir(search_path):
                module_name = f"{search_path}.{args.model_name}.tests.run_model"
                if importlib.util.find_spec(f"{search_path}.{args.model_name}") is None:
                    continue
            else:
                if not os.path.isdir(os.path.join(search_path, args.model_name)):
                    continue
                project_root, prev = search_path, None
                while not os.path.isfile(os.path.join(project_root, "pyproject.toml")):
                    project_root = os.path.dirname(project_root)
                    if project_root == prev:
                        raise ModuleNotFoundError("Could not find project root")
                    prev = project_root
                module_name = os.path.join(
                    search_path[len(project_root) + 1 :],
                    args.model_name,
                    "tests",
                    "run_model",
                ).replace(os.path.sep, ".")
            module = importlib.import_module(module_name)
            module.run_model(args.image_grids, args.video_grids)
            return None
        raise ImportError(f"Could not find model {args.model_name!r} in {sorted(args.search)!r}")
    else:
        raise NotImplementedError


if __name__ == "__main__":
    main()
