# ---------------------------------------------------------------------------- #

from __future__ import annotations

import os
from argparse import ArgumentParser, Namespace
from datetime import timedelta
from pathlib import Path

from kubernetes_asyncio.config import load_incluster_config  # type: ignore

import modelcache.agent.controller
from modelcache.shared.config import CONFIG_FILE_CHECK_INTERVAL
from modelcache.shared.util import set_debug

# ---------------------------------------------------------------------------- #


def main() -> None:
    """
    Usage:

        python -m modelcache [--debug] start --config <path_or_json>
            --provisioner-name <name> --configmap-name <name>
            [--namespace <namespace>] [--service-account-name <name>]
            [--helper-image <image>] [--helper-pod-file <path>]
            [--config-check-interval <seconds>]
    """

    args = _parse_args()

    set_debug(args.debug)

    load_incluster_config()

    if args.mode == "start":

        modelcache.agent.controller.run(
            provisioner_name=args.provisioner_name,
            config=args.config,
            namespace=args.namespace,
            service_account_name=args.service_account_name,
            configmap_name=args.configmap_name,
            helper_pod_file=args.helper_pod_file,
            helper_image=args.helper_image,
            config_check_interval=timedelta(
                seconds=args.config_check_interval
            ),
            debug=args.debug,
        )


def _parse_args() -> Namespace:

    parser = ArgumentParser(prog="modelcache")
    parser.add_argument("--debug", action="store_true")

    subparsers = parser.add_subparsers(dest="mode", required=True)

    # 'start' subcommand

    start_parser = subparsers.add_parser("start")

    start_parser.add_argument(
        "--config",
        required=True,
        help="Path to a '.json' config file, or the config itself as JSON",
    )
    start_parser.add_argument("--provisioner-name", required=True)
    start_parser.add_argument(
        "--namespace",
        default=os.environ.get("POD_NAMESPACE", "local-path-storage"),
        help="Namespace in which helper pods are created",
    )
    start_parser.add_argument(
        "--service-account-name",
        default=os.environ.get(
            "SERVICE_ACCOUNT_NAME", "local-path-provisioner-service-account"
        ),
    )
    start_parser.add_argument(
        "--configmap-name",
        required=True,
        help="ConfigMap holding the 'setup', 'setupcache', and 'teardown'"
        " scripts",
    )
    start_parser.add_argument(
        "--helper-image",
        default=None,
        help="Image of model cache helper pods",
    )
    start_parser.add_argument(
        "--helper-pod-file",
        type=Path,
        default=Path("/etc/config/helperPod.yaml"),
    )
    start_parser.add_argument(
        "--config-check-interval",
        type=float,
        default=CONFIG_FILE_CHECK_INTERVAL.total_seconds(),
        help="Seconds between two reads of the config",
    )

    # parse arguments

    return parser.parse_args()


# ---------------------------------------------------------------------------- #

if __name__ == "__main__":
    main()

# ---------------------------------------------------------------------------- #
