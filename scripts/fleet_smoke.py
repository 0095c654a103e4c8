import argparse
import asyncio
import json

from hft_fleet.common.env import init_env

init_env()

from hft_fleet.common.database import AsyncSessionLocal  # noqa: E402
from hft_fleet.services.dashboard import DashboardAggregator  # noqa: E402
from hft_fleet.services.failover import FailoverController  # noqa: E402
from hft_fleet.services.recovery.sweeper import RecoverySweeper  # noqa: E402


async def _run(probe: bool) -> int:
    async with AsyncSessionLocal() as session:
        sweep = await RecoverySweeper().sweep(session)
        print(f"recovery actions={sweep.get('recovery_actions')}")
        controller = FailoverController.from_env()
        if probe:
            tick = await controller.health_tick(session)
            print(f"probed={tick.get('checked')} failover={json.dumps(tick.get('failover'), default=str)}")
        state = await controller.get_state(session)
        print(f"primary={state.get('primary')}")
        dashboard = await DashboardAggregator.from_env().get_state(session, include_vps_health=probe)
        broken = sorted(k for k, v in dashboard.items() if isinstance(v, dict) and "error" in v)
        print(f"dashboard sections with errors={broken}")
        return 0 if state.get("primary") and not broken else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Read-mostly smoke check of the fleet control plane")
    parser.add_argument("--probe", action="store_true", help="run one failover health tick and probe the primary")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_run(args.probe)))


if __name__ == "__main__":
    main()
