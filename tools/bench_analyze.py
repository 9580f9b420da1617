import argparse
import logging
import sys
import time

import analysis_core as analysis


def _bench_file(path: str, *, parallel: bool, repeat: int) -> None:
    timings = []
    info = None
    for _ in range(max(1, repeat)):
        started = time.perf_counter()
        info = analysis.analyze_file(path, parallel=parallel)
        timings.append(time.perf_counter() - started)
    sd = info.slicer_data
    print(
        f"file={path} strategy={info.strategy} plates={len(sd.plates)} models={info.models_found} "
        f"weight_g={sd.total_weight:.2f} time_h={sd.total_time:.1f} "
        f"warnings={len(info.warnings)} errors={len(info.errors)} "
        f"best_s={min(timings):.6f} worst_s={max(timings):.6f}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark full 3MF analysis (config + plates + geometry + estimate).")
    parser.add_argument("files", nargs="+", help="Paths to .3mf projects.")
    parser.add_argument("--parallel", action="store_true", help="Run extraction stages in threads.")
    parser.add_argument("--repeat", type=int, default=3, help="Runs per file; best and worst are reported.")
    parser.add_argument("-v", "--verbose", action="store_true", help="INFO logging to stderr.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.ERROR, stream=sys.stderr)
    for path in args.files:
        _bench_file(path, parallel=args.parallel, repeat=args.repeat)


if __name__ == "__main__":
    main()
