"""
Experiment Runner - consuming an adaptive evolution stream.

This module is the consumer side of an adaptive run. It pulls generations
from an AdaptiveEvolutionStream, summarises each one, optionally persists the
summaries to Couchbase, and decides when to stop pulling (generation budget
or fitness plateau). The stream itself never needs a cancellation signal:
the runner simply stops asking and closes it.

Key Components:
- run_adaptive_evolution(): Main loop (pull, summarise, store, stop)
- calculate_generation_stats(): Per-generation summary for analysis
- compute_ttest_vs_previous() / compute_anova_generations(): Significance tests
- has_converged(): Fitness plateau detection
- store_generation_stats() / create_run() / update_run_completion(): Storage

Used by: scripts/run_adaptive_evolution.py
Related: adaptive.py (the stream), hysteresis.py (mode/decision reporting),
         couchbase_client.py (database operations)
"""

import statistics
import time
from datetime import datetime
from typing import Dict, List, Optional

from scipy import stats as scipy_stats

from adaptive_ga.models import EvolutionResult


def calculate_generation_stats(
    result: EvolutionResult,
    run_id: str,
    elapsed_seconds: float,
    mode: Optional[str] = None,
    switched: bool = False
) -> Dict:
    """
    Calculate generation-level statistics for visualization and analysis.

    Computes fitness metrics (mean, variance, std, median, min, max) and
    tracks population composition (elite, crossover, mutation, immigrant
    counts) plus the engine configuration that produced the generation.

    Args:
        result: Evolved generation
        run_id: Run identifier (e.g., "rastrigin-1")
        elapsed_seconds: Time taken to pull this generation
        mode: Adaptive mode active for this generation ("NARROW"/"ENLARGE"), if known
        switched: Whether the policy rebuilt its engine for this generation

    Returns:
        Dictionary with generation statistics

    Raises:
        ValueError: If the generation has no evaluated individuals
    """
    fitness_scores = result.fitness_values()
    if len(fitness_scores) == 0:
        raise ValueError(
            f"No fitness scores found in generation {result.generation} - all individuals have fitness=None"
        )

    moments = result.moments()
    composition = {"initial": 0, "elite": 0, "crossover": 0, "mutation": 0, "immigrant": 0}
    for individual in result.population:
        composition[individual.type] = composition.get(individual.type, 0) + 1

    best = result.best()

    return {
        "run_id": run_id,
        "generation": result.generation,
        "engine_label": result.engine_label,
        "mode": mode,
        "switched": switched,
        "population_size": len(result.population),
        "mean_fitness": moments.mean,
        "fitness_variance": moments.variance,
        "std_fitness": moments.std,
        "median_fitness": statistics.median(fitness_scores),
        "min_fitness": moments.min,
        "max_fitness": moments.max,
        "best_fitness": best.fitness,
        "best_genotype": list(best.genotype),
        "initial_count": composition["initial"],
        "elite_count": composition["elite"],
        "crossover_count": composition["crossover"],
        "mutation_count": composition["mutation"],
        "immigrant_count": composition["immigrant"],
        "elapsed_seconds": round(elapsed_seconds, 4)
    }


def compute_ttest_vs_previous(
    current: EvolutionResult,
    previous: EvolutionResult
) -> Optional[Dict]:
    """
    Compute t-test comparing current vs previous generation fitness.

    Tests null hypothesis: "Mean fitness has not changed".
    The improvement is signed according to the optimization direction, so a
    positive mean_improvement is always an improvement.

    Returns:
        Dictionary with t-test results, or None if insufficient data
    """
    current_fitness = current.fitness_values()
    previous_fitness = previous.fitness_values()

    if len(current_fitness) < 2 or len(previous_fitness) < 2:
        return None

    current_std = statistics.stdev(current_fitness)
    previous_std = statistics.stdev(previous_fitness)
    if current_std == 0 and previous_std == 0:
        return None  # t-test undefined for two constant samples

    t_stat, p_value_two_tailed = scipy_stats.ttest_ind(current_fitness, previous_fitness)
    p_value = p_value_two_tailed / 2  # One-tailed

    direction = 1.0 if current.maximize else -1.0
    mean_change = statistics.mean(current_fitness) - statistics.mean(previous_fitness)

    # Cohen's d effect size
    pooled_std = (current_std + previous_std) / 2
    cohens_d = mean_change / pooled_std if pooled_std > 0 else 0

    return {
        "p_value": float(p_value),
        "significant": bool(p_value < 0.05),
        "mean_improvement": float(direction * mean_change),
        "effect_size": float(direction * cohens_d),
        "t_statistic": float(t_stat)
    }


def compute_anova_generations(fitness_history: List[List[float]]) -> Optional[Dict]:
    """
    Compute one-way ANOVA comparing fitness across all generations seen so far.

    Tests null hypothesis: "Mean fitness is the same across all generations".
    Only runs with 3+ generations holding at least 2 samples each.

    Args:
        fitness_history: Fitness values per generation, oldest first

    Returns:
        Dictionary with ANOVA results, or None if < 3 usable generations
    """
    generation_groups = []
    generation_means = {}

    for gen_num, fitness_values in enumerate(fitness_history):
        if len(fitness_values) >= 2:
            generation_groups.append(fitness_values)
            generation_means[f"gen_{gen_num}"] = statistics.mean(fitness_values)

    if len(generation_groups) < 3:
        return None

    if all(statistics.pvariance(group) == 0 for group in generation_groups):
        return None  # F statistic undefined without within-group variance

    f_stat, p_value = scipy_stats.f_oneway(*generation_groups)

    return {
        "p_value": float(p_value),
        "significant": bool(p_value < 0.05),
        "f_statistic": float(f_stat),
        "generation_means": {k: float(v) for k, v in generation_means.items()},
        "num_generations": int(len(generation_groups))
    }


def has_converged(
    all_stats: List[Dict],
    window: int = 3,
    threshold: float = 0.05
) -> bool:
    """
    Check if evolution has converged (fitness plateau detected).

    Convergence criterion: Maximum change in mean fitness over the last
    `window` generations is less than `threshold`.

    Example:
        Gen 10: mean=15.2, Gen 11: mean=15.3, Gen 12: mean=15.3, Gen 13: mean=15.4
        Changes over last 3: [0.1, 0.0, 0.1] -> max 0.1 > 0.05 -> NOT converged

        Gen 14: mean=15.4, Gen 15: mean=15.4, Gen 16: mean=15.4
        Changes over last 3: [0.0, 0.0, 0.0] -> CONVERGED

    Used by: run_adaptive_evolution() after each generation
    """
    # Need at least window+1 generations to check convergence
    if len(all_stats) < window + 1:
        return False

    recent_means = [s['mean_fitness'] for s in all_stats[-(window+1):]]
    changes = [abs(recent_means[i+1] - recent_means[i]) for i in range(window)]

    return max(changes) < threshold


def store_generation_stats(
    stats: Dict,
    couchbase_client,
    ttest_result: Optional[Dict] = None,
    anova_result: Optional[Dict] = None
) -> None:
    """
    Store generation statistics to database for visualization and analysis.

    Saves statistics to the 'generation_stats' collection with document ID
    in format: {run_id}-gen-{generation}.

    Raises:
        Exception: If database save fails (fail-loud)
    """
    generation_doc = dict(stats)
    generation_doc["generation_id"] = f"{stats['run_id']}-gen-{stats['generation']}"
    generation_doc["timestamp"] = datetime.now().isoformat()

    if ttest_result:
        generation_doc["ttest_vs_previous"] = ttest_result
    if anova_result:
        generation_doc["anova_generations"] = anova_result

    try:
        couchbase_client.save_document("generation_stats", generation_doc["generation_id"], generation_doc)
    except Exception as e:
        print(f"❌ CRITICAL ERROR storing generation_stats for {stats['run_id']} Gen {stats['generation']}: {e}")
        raise


def create_run(
    run_id: str,
    config: Dict,
    couchbase_client
) -> None:
    """
    Create run document to track experiment configuration.

    Stores the run's parameters (problem, variance range, alterers, round
    size, ...) in the 'runs' collection.
    """
    run_doc = {
        "run_id": run_id,
        "config": config,
        "status": "running",
        "start_time": datetime.now().isoformat(),
        "end_time": None,
        "total_generations": 0,
        "switches": 0,
        "final_mean_fitness": None,
        "final_best_fitness": None
    }

    couchbase_client.save_document("runs", run_id, run_doc)


def update_run_completion(
    run_id: str,
    all_stats: List[Dict],
    couchbase_client,
    status: str = "completed"
) -> None:
    """Mark run as finished and record final statistics."""
    run_doc = couchbase_client.get_document("runs", run_id)
    run_doc["status"] = status
    run_doc["end_time"] = datetime.now().isoformat()
    run_doc["total_generations"] = len(all_stats)
    run_doc["switches"] = sum(1 for s in all_stats if s.get("switched"))
    if all_stats:
        run_doc["final_mean_fitness"] = all_stats[-1]["mean_fitness"]
        run_doc["final_best_fitness"] = all_stats[-1]["best_fitness"]

    couchbase_client.save_document("runs", run_id, run_doc)


def _policy_builds(stream) -> Optional[int]:
    return getattr(getattr(stream, "policy", None), "builds", None)


def _policy_mode(stream) -> Optional[str]:
    mode = getattr(getattr(stream, "policy", None), "mode", None)
    return mode.name if mode is not None else None


def run_adaptive_evolution(
    stream,
    run_id: str,
    num_generations: int,
    couchbase_client=None,
    convergence_window: int = 3,
    convergence_threshold: float = 0.05,
    check_convergence: bool = True,
    store_results: bool = False
) -> List[Dict]:
    """
    Pull generations from an adaptive stream until budget or convergence.

    Process:
    1. Pull the next generation (the stream picks the engine lazily)
    2. Summarise it, including the adaptive mode and whether it switched
    3. Store statistics (and optionally the full snapshot) if a client is given
    4. Stop on convergence (unless check_convergence=False) or budget
    5. Close the stream, releasing the active engine

    Error Handling (Fail-Loud):
    Any error raised while pulling propagates after the run summary is
    printed; the run document (if stored) is marked "failed".

    Args:
        stream: AdaptiveEvolutionStream (or any iterator of EvolutionResult)
        run_id: Run identifier
        num_generations: Maximum generations to pull
        couchbase_client: Optional connected CouchbaseClient
        convergence_window: Generations to check for plateau (default 3)
        convergence_threshold: Max mean fitness change for convergence (default 0.05)
        check_convergence: Whether to stop on convergence detection (default True)
        store_results: Also store full population snapshots in 'results'

    Returns:
        List of statistics dictionaries, one per generation pulled

    Raises:
        ValueError: If num_generations < 1
    """
    if num_generations < 1:
        raise ValueError(f"num_generations must be >= 1, got {num_generations}")

    experiment_start_time = time.time()

    print("\n" + "="*70)
    print(f"ADAPTIVE EVOLUTION: {run_id}")
    print("="*70)
    print(f"Max Generations: {num_generations}")
    print(f"Convergence: window={convergence_window}, threshold={convergence_threshold}, "
          f"stop_on_convergence={check_convergence}")
    print("="*70 + "\n")

    all_stats = []
    fitness_history = []
    previous = None

    try:
        for _ in range(num_generations):
            builds_before = _policy_builds(stream)
            pull_start = time.time()
            try:
                result = next(stream)
            except StopIteration:
                print("\n⚠️ Stream exhausted before the generation budget was reached")
                break
            elapsed = time.time() - pull_start

            # The first build is not a switch
            builds_after = _policy_builds(stream)
            switched = (
                previous is not None
                and builds_before is not None
                and builds_after is not None
                and builds_after > builds_before
            )
            stats = calculate_generation_stats(
                result, run_id, elapsed, mode=_policy_mode(stream), switched=switched
            )
            all_stats.append(stats)
            fitness_history.append(result.fitness_values())

            if couchbase_client is not None:
                ttest = compute_ttest_vs_previous(result, previous) if previous is not None else None
                anova = compute_anova_generations(fitness_history)
                store_generation_stats(stats, couchbase_client, ttest, anova)
                if store_results:
                    snapshot = result.to_dict()
                    snapshot["run_id"] = run_id
                    couchbase_client.save_document(
                        "results", f"{run_id}-gen-{result.generation}", snapshot
                    )

            marker = " ↻" if switched else ""
            print(f"  Gen {result.generation:4d} [{result.engine_label or '-':>8}]{marker} "
                  f"mean={stats['mean_fitness']:.4f} var={stats['fitness_variance']:.4f} "
                  f"best={stats['best_fitness']:.4f}")

            previous = result

            if has_converged(all_stats, convergence_window, convergence_threshold):
                if check_convergence:
                    print(f"\n🎯 CONVERGENCE DETECTED after {len(all_stats)} generations - stopping")
                    break
                print(f"\n⚠️ CONVERGENCE DETECTED (continuing due to check_convergence=False)")

    except Exception as e:
        print(f"\n{'='*70}")
        print("❌ FATAL ERROR")
        print(f"{'='*70}")
        print(f"Generation pull failed: {e}")
        print(f"Generations completed: {len(all_stats)}")
        print("="*70 + "\n")
        if couchbase_client is not None:
            update_run_completion(run_id, all_stats, couchbase_client, status="failed")
        raise

    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()

    if couchbase_client is not None:
        update_run_completion(run_id, all_stats, couchbase_client)

    experiment_elapsed = time.time() - experiment_start_time

    print(f"\n{'='*70}")
    print("📊 EVOLUTION COMPLETE")
    print(f"{'='*70}")
    print(f"Run: {run_id}")
    print(f"Generations: {len(all_stats)}")
    if all_stats:
        print(f"Final Mean Fitness: {all_stats[-1]['mean_fitness']:.4f}")
        print(f"Final Best Fitness: {all_stats[-1]['best_fitness']:.4f}")
    print(f"Configuration Switches: {sum(1 for s in all_stats if s['switched'])}")
    print(f"Total Time: {experiment_elapsed:.2f} seconds")
    print("="*70 + "\n")

    return all_stats
