import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from scplacebo.exceptions import (
    ScplaceboCancelledError,
    ScplaceboConfigError,
    ScplaceboEstimationError,
)
from scplacebo.utils.datautils import (
    MIN_DONORS,
    PanelData,
    check_treatment_setup,
    resolve_donor_pool,
)
from scplacebo.utils.estutils import scm_pipeline

logger = logging.getLogger(__name__)

IN_SPACE_SUMMARY_COLUMNS = [
    "unit", "rmspe_pre", "rmspe_post", "ratio", "is_real_treated",
    "converged", "donor_pool_size", "treated_in_donor_pool",
]
IN_SPACE_GAP_COLUMNS = ["unit", "time", "gap", "is_real_treated"]
IN_TIME_SUMMARY_COLUMNS = [
    "fake_treatment_time", "rmspe_pre", "rmspe_post", "ratio", "ratio_rank",
    "converged", "pre_periods_count", "post_periods_count",
]
IN_TIME_GAP_COLUMNS = ["fake_treatment_time", "time", "gap"]
IN_TIME_PATH_COLUMNS = ["fake_treatment_time", "time", "treated_outcome", "synthetic_outcome"]


@dataclass(frozen=True)
class PlaceboTask:
    """One placebo iteration: who is treated, when, and against which donors."""
    label: Any
    treated_unit: Any
    treatment_time: Any
    donor_units: List[Any]
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IterationOutcome:
    """Private result slot of one iteration."""
    task: PlaceboTask
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


def _attempt(run_one: Callable[[PlaceboTask], Dict[str, Any]], task: PlaceboTask) -> IterationOutcome:
    try:
        return IterationOutcome(task=task, result=run_one(task))
    except ScplaceboCancelledError:
        raise
    except Exception as e:
        logger.warning("Placebo iteration %r failed: %s", task.label, e)
        return IterationOutcome(task=task, error=f"{type(e).__name__}: {e}")


def run_iterations(
    tasks: Sequence[PlaceboTask],
    run_one: Callable[[PlaceboTask], Dict[str, Any]],
    parallel: bool = False,
    cores: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    progress_offset: int = 0,
    progress_total: Optional[int] = None,
) -> List[IterationOutcome]:
    """
    Run independent placebo iterations, sequentially or on a thread pool.

    Each iteration writes only its own slot, so the returned list follows the
    order of ``tasks`` whatever the completion order. A failing iteration is
    recorded in its slot and does not stop the others.

    ``should_stop`` is polled before each iteration starts (from the worker
    thread when ``parallel`` is True). Once it returns True no further
    iteration starts and :class:`ScplaceboCancelledError` is raised after the
    running ones finish. ``progress_callback(completed, total, label)`` is
    always called from the calling thread.
    """
    tasks = list(tasks)
    total = progress_total if progress_total is not None else len(tasks)
    slots: List[Optional[IterationOutcome]] = [None] * len(tasks)
    stop_requested = threading.Event()

    def _stop_now() -> bool:
        if stop_requested.is_set():
            return True
        if should_stop is not None and should_stop():
            stop_requested.set()
            return True
        return False

    def _notify(done: int, label: Any) -> None:
        if progress_callback is not None:
            progress_callback(progress_offset + done, total, label)

    if not parallel or len(tasks) <= 1:
        for i, task in enumerate(tasks):
            if _stop_now():
                break
            logger.debug("Placebo iteration %d/%d: %r", progress_offset + i + 1, total, task.label)
            slots[i] = _attempt(run_one, task)
            _notify(i + 1, task.label)
    else:
        max_workers = min(cores or os.cpu_count() or 1, len(tasks))

        def _worker(i: int) -> int:
            if not _stop_now():
                logger.debug("Placebo iteration %d/%d: %r", progress_offset + i + 1, total, tasks[i].label)
                slots[i] = _attempt(run_one, tasks[i])
            return i

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(_worker, i) for i in range(len(tasks))]
            done = 0
            for future in as_completed(futures):
                i = future.result()
                if slots[i] is not None:
                    done += 1
                    _notify(done, tasks[i].label)

    if stop_requested.is_set():
        finished = sum(slot is not None for slot in slots)
        raise ScplaceboCancelledError(
            f"Placebo batch cancelled after {finished} of {len(tasks)} iterations."
        )
    return slots


def _rank_p_value(ratios: np.ndarray, treated_ratio: float) -> Dict[str, Any]:
    """Share of valid ratios at least as large as the treated ratio."""
    valid = ratios[np.isfinite(ratios)]
    if not np.isfinite(treated_ratio) or valid.size < 2:
        return {"p_value": None, "treated_rank": None, "ranked_units": int(valid.size)}
    rank = int(np.sum(valid >= treated_ratio))
    return {"p_value": rank / valid.size, "treated_rank": rank, "ranked_units": int(valid.size)}


def in_space_placebo(
    panel: PanelData,
    treated_unit: Any,
    treatment_time: Any,
    donor_units: Optional[Sequence[Any]] = None,
    exclude_treated_from_donor: bool = True,
    parallel: bool = False,
    cores: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    **pipeline_kwargs: Any,
) -> Dict[str, Any]:
    """
    In-space placebo: reassign treatment to every donor in turn.

    The real treated unit is fitted first with the full donor pool; if that
    run fails the error propagates. Each donor ``u`` is then fitted with the
    pool minus ``u``. The real treated unit stays out of those pools unless
    ``exclude_treated_from_donor`` is False or fewer than 2 donors would
    remain, in which case it is added back and the re-admission is logged.

    Returns
    -------
    Dict[str, Any]
        ``summary`` and ``gaps`` DataFrames, ``p_value``, ``treated_ratio``,
        ``treated_rank``, ``ranked_units``, ``successful_count`` and
        ``attempted_count`` (over donor runs), ``failed_units`` and
        ``treated_result`` (the real unit's pipeline output).

    Raises
    ------
    ScplaceboConfigError
        Invalid treatment setup or no post-treatment period.
    ScplaceboEstimationError
        Every donor run failed.
    ScplaceboCancelledError
        ``should_stop`` requested an abort.
    """
    donor_pool = resolve_donor_pool(panel, treated_unit, donor_units)
    periods = check_treatment_setup(panel, treated_unit, treatment_time, donor_pool)
    if len(periods["post_times"]) == 0:
        raise ScplaceboConfigError(
            f"No post-treatment periods at or after {treatment_time!r}; placebo ratios are undefined."
        )

    total = 1 + len(donor_pool)
    logger.info(
        "In-space placebo for %r at %r: %d donor runs.", treated_unit, treatment_time, len(donor_pool)
    )

    if should_stop is not None and should_stop():
        raise ScplaceboCancelledError("Placebo batch cancelled before the treated unit was fitted.")
    treated_result = scm_pipeline(panel, treated_unit, treatment_time, donor_pool, **pipeline_kwargs)
    if progress_callback is not None:
        progress_callback(1, total, treated_unit)

    tasks = []
    for unit in donor_pool:
        pool = [d for d in donor_pool if d != unit]
        treated_in_pool = False
        if not exclude_treated_from_donor:
            pool.append(treated_unit)
            treated_in_pool = True
        elif len(pool) < MIN_DONORS:
            logger.warning(
                "Placebo for %r has only %d donors without the treated unit; re-admitting %r.",
                unit, len(pool), treated_unit,
            )
            pool.append(treated_unit)
            treated_in_pool = True
        tasks.append(PlaceboTask(
            label=unit,
            treated_unit=unit,
            treatment_time=treatment_time,
            donor_units=pool,
            meta={"treated_in_donor_pool": treated_in_pool},
        ))

    outcomes = run_iterations(
        tasks,
        lambda task: scm_pipeline(panel, task.treated_unit, task.treatment_time, task.donor_units, **pipeline_kwargs),
        parallel=parallel,
        cores=cores,
        progress_callback=progress_callback,
        should_stop=should_stop,
        progress_offset=1,
        progress_total=total,
    )

    successes = [o for o in outcomes if o.succeeded]
    failed_units = {o.task.label: o.error for o in outcomes if not o.succeeded}
    if not successes:
        raise ScplaceboEstimationError(
            f"All {len(tasks)} placebo runs failed; no placebo distribution available. "
            f"First error: {next(iter(failed_units.values()))}"
        )

    rows = [{
        "unit": treated_unit,
        "rmspe_pre": treated_result["rmspe_pre"],
        "rmspe_post": treated_result["rmspe_post"],
        "ratio": treated_result["ratio"],
        "is_real_treated": True,
        "converged": treated_result["converged"],
        "donor_pool_size": len(treated_result["donor_units"]),
        "treated_in_donor_pool": False,
    }]
    gap_frames = [_gap_frame(treated_result, treated_unit, True)]
    for outcome in successes:
        result = outcome.result
        rows.append({
            "unit": outcome.task.label,
            "rmspe_pre": result["rmspe_pre"],
            "rmspe_post": result["rmspe_post"],
            "ratio": result["ratio"],
            "is_real_treated": False,
            "converged": result["converged"],
            "donor_pool_size": len(result["donor_units"]),
            "treated_in_donor_pool": outcome.task.meta["treated_in_donor_pool"],
        })
        gap_frames.append(_gap_frame(result, outcome.task.label, False))

    summary = pd.DataFrame(rows, columns=IN_SPACE_SUMMARY_COLUMNS)
    ranking = _rank_p_value(summary["ratio"].to_numpy(dtype=float), treated_result["ratio"])

    logger.info(
        "In-space placebo finished: %d/%d donor runs succeeded, p-value=%s.",
        len(successes), len(tasks), ranking["p_value"],
    )

    return {
        "summary": summary,
        "gaps": pd.concat(gap_frames, ignore_index=True)[IN_SPACE_GAP_COLUMNS],
        "p_value": ranking["p_value"],
        "treated_ratio": treated_result["ratio"],
        "treated_rank": ranking["treated_rank"],
        "ranked_units": ranking["ranked_units"],
        "successful_count": len(successes),
        "attempted_count": len(tasks),
        "failed_units": failed_units,
        "treated_result": treated_result,
    }


def _gap_frame(result: Dict[str, Any], unit: Any, is_real_treated: bool) -> pd.DataFrame:
    path = result["outcome_path"]
    return pd.DataFrame({
        "unit": unit,
        "time": path["time"].to_numpy(),
        "gap": path["gap"].to_numpy(dtype=float),
        "is_real_treated": is_real_treated,
    })


def screen_fake_times(
    panel: PanelData,
    real_treatment_time: Any,
    fake_treatment_times: Sequence[Any],
    min_pre_periods: int = 3,
    min_post_periods: int = 2,
) -> Dict[str, Any]:
    """
    Split candidate fake treatment times into usable and skipped ones.

    A candidate is usable when it is strictly before the real treatment time,
    is a time value of the panel, has at least ``min_pre_periods`` periods
    before it and at least ``min_post_periods`` periods from it up to (not
    including) the real treatment time.

    Returns
    -------
    Dict[str, Any]
        ``valid`` (ascending list of usable times) and ``skipped``
        (time -> reason).
    """
    try:
        candidates = sorted(set(fake_treatment_times))
        times = panel.times
        before_real = times[times < real_treatment_time]
    except TypeError as e:
        raise ScplaceboConfigError(f"Fake treatment times are not comparable with the time column: {e}") from e

    valid: List[Any] = []
    skipped: Dict[Any, str] = {}
    for fake in candidates:
        if not fake < real_treatment_time:
            skipped[fake] = f"not before the real treatment time {real_treatment_time!r}"
        elif not np.any(times == fake):
            skipped[fake] = "not a time value of the panel"
        else:
            n_pre = int(np.sum(before_real < fake))
            n_post = int(np.sum(before_real >= fake))
            if n_pre < min_pre_periods:
                skipped[fake] = f"only {n_pre} pre-treatment periods (minimum {min_pre_periods})"
            elif n_post < min_post_periods:
                skipped[fake] = f"only {n_post} post-treatment periods before the real treatment (minimum {min_post_periods})"
            else:
                valid.append(fake)
                continue
        logger.warning("Skipping fake treatment time %r: %s.", fake, skipped[fake])
    return {"valid": valid, "skipped": skipped}


def in_time_placebo(
    panel: PanelData,
    treated_unit: Any,
    real_treatment_time: Any,
    fake_treatment_times: Sequence[Any],
    donor_units: Optional[Sequence[Any]] = None,
    min_pre_periods: int = 3,
    min_post_periods: int = 2,
    parallel: bool = False,
    cores: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    **pipeline_kwargs: Any,
) -> Dict[str, Any]:
    """
    In-time placebo: backdate the treatment of the real treated unit.

    Every run uses the panel truncated to times strictly before the real
    treatment time, so no fake-date fit sees post-intervention data.

    Returns
    -------
    Dict[str, Any]
        ``summary``, ``gaps`` and ``paths`` DataFrames, ``successful_count``,
        ``attempted_count``, ``skipped_times`` and ``failed_times``.

    Raises
    ------
    ScplaceboConfigError
        Invalid treatment setup, or no candidate passes the screening.
    ScplaceboEstimationError
        Every fake-date run failed.
    ScplaceboCancelledError
        ``should_stop`` requested an abort.
    """
    donor_pool = resolve_donor_pool(panel, treated_unit, donor_units)
    check_treatment_setup(panel, treated_unit, real_treatment_time, donor_pool)

    screening = screen_fake_times(panel, real_treatment_time, fake_treatment_times, min_pre_periods, min_post_periods)
    if not screening["valid"]:
        reasons = "; ".join(f"{t!r}: {r}" for t, r in screening["skipped"].items())
        raise ScplaceboConfigError(f"No valid fake treatment times. {reasons}")

    truncated = panel.truncate(real_treatment_time)
    tasks = [
        PlaceboTask(label=fake, treated_unit=treated_unit, treatment_time=fake, donor_units=list(donor_pool))
        for fake in screening["valid"]
    ]
    logger.info(
        "In-time placebo for %r (real treatment %r): %d fake dates, %d skipped.",
        treated_unit, real_treatment_time, len(tasks), len(screening["skipped"]),
    )

    outcomes = run_iterations(
        tasks,
        lambda task: scm_pipeline(truncated, task.treated_unit, task.treatment_time, task.donor_units, **pipeline_kwargs),
        parallel=parallel,
        cores=cores,
        progress_callback=progress_callback,
        should_stop=should_stop,
    )

    successes = [o for o in outcomes if o.succeeded]
    failed_times = {o.task.label: o.error for o in outcomes if not o.succeeded}
    if not successes:
        raise ScplaceboEstimationError(
            f"All {len(tasks)} fake treatment time runs failed. First error: {next(iter(failed_times.values()))}"
        )

    rows, gap_frames, path_frames = [], [], []
    for outcome in successes:
        fake, result = outcome.task.label, outcome.result
        path = result["outcome_path"]
        rows.append({
            "fake_treatment_time": fake,
            "rmspe_pre": result["rmspe_pre"],
            "rmspe_post": result["rmspe_post"],
            "ratio": result["ratio"],
            "converged": result["converged"],
            "pre_periods_count": result["pre_periods"],
            "post_periods_count": result["post_periods"],
        })
        gap_frames.append(pd.DataFrame({
            "fake_treatment_time": fake,
            "time": path["time"].to_numpy(),
            "gap": path["gap"].to_numpy(dtype=float),
        }))
        path_frames.append(pd.DataFrame({
            "fake_treatment_time": fake,
            "time": path["time"].to_numpy(),
            "treated_outcome": path["treated_outcome"].to_numpy(dtype=float),
            "synthetic_outcome": path["synthetic_outcome"].to_numpy(dtype=float),
        }))

    summary = pd.DataFrame(rows)
    summary["ratio_rank"] = summary["ratio"].rank(ascending=False, method="min").astype("Int64")
    summary = summary[IN_TIME_SUMMARY_COLUMNS]

    logger.info("In-time placebo finished: %d/%d fake dates succeeded.", len(successes), len(tasks))

    return {
        "summary": summary,
        "gaps": pd.concat(gap_frames, ignore_index=True)[IN_TIME_GAP_COLUMNS],
        "paths": pd.concat(path_frames, ignore_index=True)[IN_TIME_PATH_COLUMNS],
        "successful_count": len(successes),
        "attempted_count": len(tasks),
        "skipped_times": screening["skipped"],
        "failed_times": failed_times,
    }
