"""
k3snode/cli/k3snctl.py

Entry point dispatching `k3snctl <role> ...` to the role CLI module, e.g.
`k3snctl server create ...` runs `python -m k3snode.cli.server create ...`.
"""

import subprocess
import sys

ROLES = {
    "server": "k3snode.cli.server",
    "agent": "k3snode.cli.agent",
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in ROLES:
        print(f"Usage: k3snctl <{'|'.join(ROLES)}> <subcommand> [args...]", file=sys.stderr)
        sys.exit(1)

    module = ROLES[sys.argv[1]]
    sys.exit(subprocess.call([sys.executable, "-m", module, *sys.argv[2:]]))


if __name__ == "__main__":
    main()
