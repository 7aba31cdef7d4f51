#!/usr/bin/env python3
"""
Run an adaptive evolution experiment on a benchmark problem.

The run switches between a narrow (exploitative) and an enlarge (explorative)
engine configuration whenever the population's fitness variance leaves the
target band, and prints one line per generation. With --store the run and its
per-generation statistics are saved to Couchbase.

Usage:
    # 50 generations of a 5-dimensional Rastrigin problem
    python scripts/run_adaptive_evolution.py --run-id rastrigin-1 --problem rastrigin \\
        --dimensions 5 --generations 50

    # Let each chosen engine run 10 generations before the policy decides again
    python scripts/run_adaptive_evolution.py --run-id sphere-1 --generations 100 \\
        --engine-limit 10
"""

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from adaptive_ga.adaptive import AdaptiveEngine
from adaptive_ga.couchbase_client import CouchbaseClient
from adaptive_ga.engine import (
    ENLARGE_ALTERER,
    NARROW_ALTERER,
    PARENT_SELECTIONS,
    EngineBuilder,
    validate_engine_parameters
)
from adaptive_ga.errors import AdaptiveEngineError
from adaptive_ga.experiment import create_run, run_adaptive_evolution
from adaptive_ga.fitness_evaluator import PROBLEMS
from adaptive_ga.hysteresis import VarianceHysteresisPolicy, VarianceRange
from adaptive_ga.models import EvolutionStart


def build_policy(args):
    """Create the hysteresis policy described by the command line."""
    base = (
        EngineBuilder.for_problem(args.problem, dimensions=args.dimensions)
        .population_size(args.population)
        .elite_fraction(args.elite)
        .immigration_fraction(args.immigration_fraction)
        .parent_selection(args.parent_selection, tournament_size=args.tournament_size)
        .evaluation_workers(args.workers)
        .seed(args.seed)
    )

    narrow = NARROW_ALTERER
    enlarge = ENLARGE_ALTERER
    if args.narrow_sigma is not None:
        narrow = replace(narrow, mutation_sigma=args.narrow_sigma)
    if args.enlarge_sigma is not None:
        enlarge = replace(enlarge, mutation_sigma=args.enlarge_sigma)

    # Fail before the first pull rather than on it
    validate_engine_parameters(base.alterer(narrow).parameters)
    validate_engine_parameters(base.alterer(enlarge).parameters)

    if args.engine_limit is not None:
        base = base.limit(args.engine_limit)

    return VarianceHysteresisPolicy.by_fitness_variance(
        VarianceRange(args.variance_min, args.variance_max),
        base,
        narrow,
        enlarge,
        verbose=True
    )


def main():
    parser = argparse.ArgumentParser(
        description="""Run adaptive genetic algorithm evolution.

A variance hysteresis policy chooses the engine for every round: the narrow
configuration while the fitness variance stays above the lower bound, the
enlarge configuration once it drops below it, and back to narrow only after
the variance exceeds the upper bound.""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Quick local run, nothing stored
  python scripts/run_adaptive_evolution.py --run-id test-1 --generations 20

  # Wider band, stored in Couchbase (run scripts/setup_couchbase.py first)
  python scripts/run_adaptive_evolution.py --run-id rastrigin-2 --problem rastrigin \\
    --dimensions 10 --generations 200 --variance-min 0.5 --variance-max 4.0 --store

  # Force the full budget even if the mean fitness plateaus
  python scripts/run_adaptive_evolution.py --run-id test-2 --generations 50 --no-convergence-stop
        """
    )

    # Required arguments
    required = parser.add_argument_group('Required Arguments')
    required.add_argument(
        "--run-id",
        required=True,
        metavar="RUN_ID",
        help="Run identifier used for stored documents and the stats file (e.g., 'sphere-1')"
    )
    required.add_argument(
        "--generations",
        type=int,
        required=True,
        metavar="N",
        help="Maximum number of generations to pull. The run may stop earlier if "
             "convergence is detected."
    )

    # Problem Configuration
    problem = parser.add_argument_group('Problem Configuration')
    problem.add_argument(
        "--problem",
        choices=sorted(PROBLEMS),
        default="sphere",
        help="Benchmark fitness function. Choices: %(choices)s (default: %(default)s)"
    )
    problem.add_argument(
        "--dimensions",
        type=int,
        default=2,
        metavar="D",
        help="Number of genes per individual (default: %(default)s)"
    )

    # Genetic Algorithm Parameters
    ga_params = parser.add_argument_group('Genetic Algorithm Parameters')
    ga_params.add_argument(
        "--population",
        type=int,
        default=20,
        metavar="SIZE",
        help="Population size (default: %(default)s)"
    )
    ga_params.add_argument(
        "--elite",
        type=float,
        default=0.2,
        metavar="FRACTION",
        help="Elite fraction preserved unchanged each generation (default: %(default)s)"
    )
    ga_params.add_argument(
        "--immigration-fraction",
        type=float,
        default=0.0,
        metavar="FRACTION",
        help="Fraction of random immigrants on ODD generations only (default: %(default)s)"
    )
    ga_params.add_argument(
        "--narrow-sigma",
        type=float,
        default=None,
        metavar="SIGMA",
        help=f"Mutation step of the narrow configuration, relative to the interval width "
             f"(default: {NARROW_ALTERER.mutation_sigma})"
    )
    ga_params.add_argument(
        "--enlarge-sigma",
        type=float,
        default=None,
        metavar="SIGMA",
        help=f"Mutation step of the enlarge configuration, relative to the interval width "
             f"(default: {ENLARGE_ALTERER.mutation_sigma})"
    )
    ga_params.add_argument(
        "--parent-selection",
        choices=PARENT_SELECTIONS,
        default="elite",
        help="How crossover and mutation parents are drawn (default: %(default)s)"
    )
    ga_params.add_argument(
        "--tournament-size",
        type=int,
        default=3,
        metavar="N",
        help="Contestants per tournament with --parent-selection tournament (default: %(default)s)"
    )
    ga_params.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible runs (default: random)"
    )
    ga_params.add_argument(
        "--workers",
        type=int,
        default=1,
        metavar="N",
        help="Fitness evaluation threads per engine (default: %(default)s)"
    )

    # Adaptive Settings
    adaptive = parser.add_argument_group('Adaptive Settings')
    adaptive.add_argument(
        "--variance-min",
        type=float,
        default=0.05,
        metavar="V",
        help="Switch to the enlarge configuration below this fitness variance (default: %(default)s)"
    )
    adaptive.add_argument(
        "--variance-max",
        type=float,
        default=1.0,
        metavar="V",
        help="Switch back to the narrow configuration above this fitness variance (default: %(default)s)"
    )
    adaptive.add_argument(
        "--generations-per-round",
        type=int,
        default=1,
        metavar="N",
        help="Generations each chosen engine runs before the policy decides again "
             "(default: %(default)s = decide every generation)"
    )
    adaptive.add_argument(
        "--engine-limit",
        type=int,
        default=None,
        metavar="N",
        help="Limit every built engine to N generations and let each round last until "
             "the engine stops. Overrides --generations-per-round."
    )

    # Convergence Settings
    convergence = parser.add_argument_group('Convergence Settings')
    convergence.add_argument(
        "--convergence-window",
        type=int,
        default=3,
        metavar="GENS",
        help="Number of generations to check for fitness plateau (default: %(default)s)"
    )
    convergence.add_argument(
        "--convergence-threshold",
        type=float,
        default=0.05,
        metavar="CHANGE",
        help="Maximum mean fitness change to consider converged (default: %(default)s)"
    )
    convergence.add_argument(
        "--no-convergence-stop",
        action="store_true",
        default=False,
        help="Continue evolution even if convergence detected (default: stop on convergence)"
    )

    # Storage Options
    storage = parser.add_argument_group('Storage Options')
    storage.add_argument(
        "--store",
        action="store_true",
        default=False,
        help="Store the run and per-generation statistics in Couchbase"
    )
    storage.add_argument(
        "--store-results",
        action="store_true",
        default=False,
        help="With --store, also save every full population snapshot"
    )

    args = parser.parse_args()

    # Validate arguments
    if args.generations < 1:
        print("ERROR: Must evolve at least 1 generation")
        sys.exit(1)

    if args.engine_limit is not None and args.engine_limit < 1:
        print("ERROR: --engine-limit must be at least 1")
        sys.exit(1)

    if args.store_results and not args.store:
        print("WARNING: --store-results has no effect without --store")

    generations_per_round = None if args.engine_limit is not None else args.generations_per_round

    try:
        policy = build_policy(args)
        adaptive_engine = AdaptiveEngine(policy, generations_per_round=generations_per_round)
    except (AdaptiveEngineError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    config = {
        "problem": args.problem,
        "dimensions": args.dimensions,
        "population_size": args.population,
        "elite_fraction": args.elite,
        "immigration_fraction": args.immigration_fraction,
        "variance_range": [args.variance_min, args.variance_max],
        "generations_per_round": generations_per_round,
        "engine_limit": args.engine_limit,
        "max_generations": args.generations,
        "parent_selection": args.parent_selection,
        "tournament_size": args.tournament_size,
        "seed": args.seed
    }

    # Print configuration
    print("=" * 60)
    print("ADAPTIVE EVOLUTION EXPERIMENT")
    print("=" * 60)
    print(f"Run:               {args.run_id}")
    print(f"Problem:           {args.problem} ({args.dimensions}D)")
    print(f"Max Generations:   {args.generations}")
    print(f"Population Size:   {args.population}")
    print()
    print("Adaptive Parameters:")
    print(f"  Variance Range:      [{args.variance_min}, {args.variance_max}]")
    if args.engine_limit is not None:
        print(f"  Round Length:        until engine stops ({args.engine_limit} gens)")
    else:
        print(f"  Round Length:        {generations_per_round} gen(s)")
    print(f"  Elite Fraction:      {args.elite:.1%}")
    print(f"  Immigration:         {args.immigration_fraction:.1%} (odd gens only)")
    print(f"  Storage:             {'Couchbase' if args.store else 'local JSON only'}")
    print("=" * 60)
    print()

    stream = adaptive_engine.stream(EvolutionStart.empty)
    try:
        if args.store:
            with CouchbaseClient() as cb:
                create_run(args.run_id, config, cb)
                all_stats = run_adaptive_evolution(
                    stream,
                    run_id=args.run_id,
                    num_generations=args.generations,
                    couchbase_client=cb,
                    convergence_window=args.convergence_window,
                    convergence_threshold=args.convergence_threshold,
                    check_convergence=not args.no_convergence_stop,
                    store_results=args.store_results
                )
        else:
            all_stats = run_adaptive_evolution(
                stream,
                run_id=args.run_id,
                num_generations=args.generations,
                convergence_window=args.convergence_window,
                convergence_threshold=args.convergence_threshold,
                check_convergence=not args.no_convergence_stop
            )

    except KeyboardInterrupt:
        stream.close()
        print("\n\n✗ Evolution interrupted by user")
        sys.exit(1)

    except Exception as e:
        stream.close()
        print(f"\n✗ ERROR: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)

    # Print summary
    switches = [s['generation'] for s in all_stats if s['switched']]
    print("Generation Summary:")
    print("-" * 60)
    for stats in all_stats:
        marker = " ↻" if stats['switched'] else ""
        print(f"  Gen {stats['generation']:3d} [{stats['mode'] or '-':>7}]{marker}: "
              f"mean={stats['mean_fitness']:.4f}, var={stats['fitness_variance']:.4f}, "
              f"best={stats['best_fitness']:.4f}")
    print("=" * 60)
    print(f"Configuration switches at generations: {switches if switches else 'none'}")

    # Save stats to file
    output_file = Path("tmp") / f"adaptive_stats_{args.run_id}.json"
    output_file.parent.mkdir(exist_ok=True)
    with open(output_file, 'w') as f:
        json.dump({"config": config, "generations": all_stats}, f, indent=2)
    print(f"\n✓ Statistics saved to: {output_file}")


if __name__ == "__main__":
    main()
