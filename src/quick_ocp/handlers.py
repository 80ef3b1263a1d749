"""
Command line entry-points

* `run` - The whole pipeline, as invoked by the composite action
* `resolve` - Version resolution only, writes `crc_version` so the bundle cache can be keyed on it
* `install` - Download and install the CRC binary
* `wait` - The readiness gates against an already running cluster
* `trim` - Scale the cluster down, or `--dry-run` to only report what would change
"""
import argparse
import logging
import sys
from typing import List, Optional

from . import download, pipeline, readiness, trimmer
from .config import ActionInputs, HostLayout, load_inputs
from .errors import QuickOcpError
from .util import write_outputs

LOG = logging.getLogger("quick_ocp")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quick-ocp", description="Bring up OpenShift Local (CRC) on a CI runner")
    parser.add_argument("--log-level", help="Overrides the logLevel input")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Resolve, download, start, wait for and trim a CRC cluster")
    run.add_argument("--ocp-version", help="Overrides the desiredOCPVersion input")
    run.add_argument("--crc-version", help="Overrides the crcVersion input")

    resolve = sub.add_parser("resolve", help="Resolve the CRC version to install")
    resolve.add_argument("--ocp-version", help="Overrides the desiredOCPVersion input")
    resolve.add_argument("--crc-version", help="Overrides the crcVersion input")

    install = sub.add_parser("install", help="Download and install the CRC binary")
    install.add_argument("--crc-version", required=True)

    wait = sub.add_parser("wait", help="Wait for the running cluster to become ready")
    wait.add_argument("--pods", action="store_true", help="Also wait for pods")
    wait.add_argument("--operators", action="store_true", help="Also wait for cluster operators")

    trim = sub.add_parser("trim", help="Scale non-essential components to zero")
    trim.add_argument("--dry-run", action="store_true", help="Only list what would be scaled down")
    return parser


def _overrides(args: argparse.Namespace) -> dict:
    return {
        "logLevel": args.log_level,
        "desiredOCPVersion": getattr(args, "ocp_version", None),
        "crcVersion": getattr(args, "crc_version", None),
    }


def run_handler(args: argparse.Namespace, inputs: ActionInputs, layout: HostLayout):
    LOG.info('[RUN] Starting quick-ocp run')
    result = pipeline.run(inputs, layout)
    write_outputs(result.outputs())


def resolve_handler(args: argparse.Namespace, inputs: ActionInputs, layout: HostLayout):
    resolved = pipeline.resolve_stage(inputs)
    write_outputs({"crc_version": resolved.crc_version, "version_source": resolved.source.value})


def install_handler(args: argparse.Namespace, inputs: ActionInputs, layout: HostLayout):
    download.check_connectivity()
    result = download.acquire(args.crc_version, layout)
    write_outputs({"crc_version": result.crc_version})


def wait_handler(args: argparse.Namespace, inputs: ActionInputs, layout: HostLayout):
    pipeline.wait_stage(readiness.oc_binary(layout), args.pods, args.operators)


def trim_handler(args: argparse.Namespace, inputs: ActionInputs, layout: HostLayout):
    oc = readiness.oc_binary(layout)
    if args.dry_run:
        trimmer.evaluate_trim(oc)
        return
    report = trimmer.trim_cluster(oc)
    if report.failed:
        LOG.warning('[TRIM] Some components could not be trimmed: %s', ", ".join(report.failed))


HANDLERS = {
    "run": run_handler,
    "resolve": resolve_handler,
    "install": install_handler,
    "wait": wait_handler,
    "trim": trim_handler,
}


def main(argv: Optional[List[str]] = None) -> int:
    """
    :return int: Process exit code, 0 on success and 1 on any fatal error
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(format=LOG_FORMAT, stream=sys.stdout)
    try:
        inputs = load_inputs(overrides=_overrides(args))
        LOG.setLevel(inputs.log_level)
        LOG.debug('[%s] Inputs %s', args.command.upper(), inputs.budget)
        HANDLERS[args.command](args, inputs, HostLayout.from_env())
    except QuickOcpError as e:
        LOG.error('[%s] %s', args.command.upper(), e)
        if e.hint:
            LOG.error('[%s] Hint: %s', args.command.upper(), e.hint)
        for blocker in getattr(e, "blockers", []):
            LOG.error('[%s]   - %s', args.command.upper(), blocker)
        return 1
    except Exception as e:
        LOG.error('[%s] Unexpected error: %s', args.command.upper(), e, exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
