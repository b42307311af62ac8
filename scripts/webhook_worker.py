from __future__ import annotations

from arq import run_worker

from hookrelay.core.logging import configure_logging
from hookrelay.workers.webhook_worker import WorkerSettings


def main() -> None:
    # Consume queued delivery ids; use with WEBHOOK_EXECUTION_MODE=queue on the API side.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
