"""BatchExecutor - concurrent playbook runs with progress tracking."""

import asyncio
import csv
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .context import ExecutionStatus
from .engine import PlaybookEngine
from .models import Playbook
from .tracer import ExecutionResult

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Result of a single playbook run in a batch."""

    index: int
    initial_variables: Dict[str, Any]
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        """Check if the run completed."""
        return self.result is not None and self.result.success

    @property
    def status(self) -> str:
        return self.result.status.value if self.result else "skipped"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "index": self.index,
            "success": self.success,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "initial_variables": self.initial_variables,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class BatchResults:
    """Aggregated results from batch execution."""

    results: List[BatchResult] = field(default_factory=list)
    total_duration_ms: float = 0.0

    @property
    def total(self) -> int:
        """Total number of runs."""
        return len(self.results)

    @property
    def success_count(self) -> int:
        """Number of completed runs."""
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        """Number of runs that did not complete."""
        return sum(1 for r in self.results if not r.success)

    @property
    def avg_duration_ms(self) -> float:
        """Average duration in milliseconds of the runs that started; skipped ones are left out."""
        durations = [r.duration_ms for r in self.results if r.result is not None]
        if not durations:
            return 0.0
        return sum(durations) / len(durations)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "total": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "avg_duration_ms": self.avg_duration_ms,
            "total_duration_ms": self.total_duration_ms,
            "results": [r.to_dict() for r in self.results],
        }

    def to_json(self, output_path: str, indent: int = 2) -> None:
        """
        Export results to JSON file.

        Args:
            output_path: Path to output JSON file
            indent: JSON indentation level (default: 2)
        """
        path = Path(output_path)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=indent, default=str)

    def to_csv(self, output_path: str) -> None:
        """
        Export results summary to CSV file.

        Args:
            output_path: Path to output CSV file
        """
        path = Path(output_path)
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(
                f,
                fieldnames=["index", "execution_id", "status", "duration_ms", "error"],
            )
            writer.writeheader()
            for item in self.results:
                writer.writerow(
                    {
                        "index": item.index,
                        "execution_id": item.result.execution_id if item.result else "",
                        "status": item.status,
                        "duration_ms": item.duration_ms,
                        "error": item.error or "",
                    }
                )


class BatchExecutor:
    """
    Run one playbook against many sets of initial variables concurrently.

    Runs are independent: each has its own execution context, and only the
    read-only playbook and the engine are shared.

    Example:
        executor = BatchExecutor(max_concurrency=5)
        inputs = [
            {"alert": {"severity": 9, "source": "edr"}},
            {"alert": {"severity": 3, "source": "email"}},
        ]
        results = await executor.execute_batch(playbook, inputs)
        print(f"Success: {results.success_count}/{results.total}")
        results.to_json("results.json")
    """

    def __init__(
        self,
        engine: Optional[PlaybookEngine] = None,
        max_concurrency: int = 5,
        show_progress: bool = False,
    ) -> None:
        """
        Initialize batch executor.

        Args:
            engine: PlaybookEngine to use (creates new one if None)
            max_concurrency: Maximum number of concurrent runs
            show_progress: Whether to show progress updates
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.engine = engine or PlaybookEngine()
        self.max_concurrency = max_concurrency
        self.show_progress = show_progress

    async def execute_batch(
        self,
        playbook: Playbook,
        inputs: List[Dict[str, Any]],
        continue_on_error: bool = True,
    ) -> BatchResults:
        """
        Execute a playbook once per input.

        Args:
            playbook: The playbook to execute
            inputs: Initial variables for each run
            continue_on_error: When False, runs that have not started yet are
                skipped once any run fails

        Returns:
            BatchResults in input order
        """
        if not inputs:
            return BatchResults(results=[], total_duration_ms=0.0)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        stop = asyncio.Event()

        if self.show_progress:
            print(f"Processing {len(inputs)} inputs...")

        start_time = time.perf_counter()
        batch_results = await asyncio.gather(
            *(
                self._execute_single(
                    playbook, i, variables, semaphore, stop, continue_on_error
                )
                for i, variables in enumerate(inputs)
            )
        )
        total_duration_ms = (time.perf_counter() - start_time) * 1000

        results = BatchResults(
            results=list(batch_results), total_duration_ms=total_duration_ms
        )

        logger.info(
            "Batch of %d runs for %s: %d completed, %d not completed",
            results.total,
            playbook.id,
            results.success_count,
            results.failure_count,
        )
        if self.show_progress:
            print(
                f"Completed: Success: {results.success_count}, "
                f"Failed: {results.failure_count}, "
                f"Avg: {results.avg_duration_ms:.0f}ms"
            )

        return results

    async def _execute_single(
        self,
        playbook: Playbook,
        index: int,
        variables: Dict[str, Any],
        semaphore: asyncio.Semaphore,
        stop: asyncio.Event,
        continue_on_error: bool,
    ) -> BatchResult:
        async with semaphore:
            if stop.is_set():
                return BatchResult(
                    index=index,
                    initial_variables=variables,
                    error="Skipped after an earlier run failed",
                )

            start_time = time.perf_counter()
            result = await self.engine.execute(playbook, variables)
            duration_ms = (time.perf_counter() - start_time) * 1000

            if self.show_progress:
                status = "✓" if result.success else "✗"
                print(f"  [{index + 1}] {status} {result.status.value} ({duration_ms:.0f}ms)")

            if result.status != ExecutionStatus.COMPLETED and not continue_on_error:
                stop.set()

            return BatchResult(
                index=index,
                initial_variables=variables,
                result=result,
                error=result.error if not result.success else None,
                duration_ms=duration_ms,
            )


def main() -> None:
    """CLI entry point for batch execution."""
    import argparse
    import sys

    from .config import setup_logging
    from .loader import PlaybookLoader

    parser = argparse.ArgumentParser(
        description="Execute a playbook in batch with multiple inputs"
    )
    parser.add_argument("playbook", help="Path to playbook YAML or JSON file")
    parser.add_argument("inputs", help="Path to JSON file with an array of initial variables")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=5,
        help="Maximum concurrent runs (default: 5)",
    )
    parser.add_argument(
        "--output",
        help="Output file path for results (.json or .csv)",
    )
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Show progress updates",
    )
    parser.add_argument(
        "--stop-on-error",
        action="store_true",
        help="Skip remaining runs after the first failure",
    )
    parser.add_argument("--log-level", help="Logging level (default from settings)")

    args = parser.parse_args()
    setup_logging(args.log_level)

    async def run() -> int:
        loader = PlaybookLoader()
        playbook = loader.load_from_file(args.playbook)

        with Path(args.inputs).open("r", encoding="utf-8") as f:
            inputs = json.load(f)

        if not isinstance(inputs, list) or not all(isinstance(i, dict) for i in inputs):
            print("Error: inputs file must contain a JSON array of objects", file=sys.stderr)
            return 1

        executor = BatchExecutor(
            max_concurrency=args.max_concurrency,
            show_progress=args.progress,
        )
        results = await executor.execute_batch(
            playbook,
            inputs,
            continue_on_error=not args.stop_on_error,
        )

        print("\nBatch Execution Summary:")
        print(f"  Total: {results.total}")
        print(f"  Success: {results.success_count}")
        print(f"  Failed: {results.failure_count}")
        print(f"  Avg Duration: {results.avg_duration_ms:.0f}ms")
        print(f"  Total Duration: {results.total_duration_ms:.0f}ms")

        if args.output:
            output_path = Path(args.output)
            if output_path.suffix == ".csv":
                results.to_csv(str(output_path))
            else:
                results.to_json(str(output_path))
            print(f"\nResults saved to: {args.output}")

        return 0 if results.failure_count == 0 else 1

    try:
        sys.exit(asyncio.run(run()))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
