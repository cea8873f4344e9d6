# tests/conftest.py
import pytest
import numpy as np
import pandas as pd


@pytest.fixture
def three_unit_panel() -> pd.DataFrame:
    """A = 50/50 mix of B and C before 2005, +5 from 2005 on. Years 2000-2007."""
    years = np.arange(2000, 2008)
    k = years - 2000
    b = 10.0 + k
    c = 20.0 + 3.0 * k
    a = 0.5 * b + 0.5 * c + np.where(years >= 2005, 5.0, 0.0)
    return pd.DataFrame({
        "unit": np.repeat(["A", "B", "C"], len(years)),
        "year": np.tile(years, 3),
        "gdp": np.concatenate([a, b, c]),
    })


@pytest.fixture
def noisy_panel() -> pd.DataFrame:
    """Six units over periods 1-12 with a covariate; u0 is treated from period 9 with a +3 effect."""
    rng = np.random.default_rng(7)
    units = [f"u{i}" for i in range(6)]
    periods = np.arange(1, 13)
    donors = {
        u: rng.normal(10 + 2 * i, 1.0) + 0.5 * (i % 3 + 1) * periods + rng.normal(0, 0.3, len(periods))
        for i, u in enumerate(units[1:], start=1)
    }
    mix = np.mean([donors["u1"], donors["u3"], donors["u4"]], axis=0)
    treated = mix + rng.normal(0, 0.4, len(periods)) + np.where(periods >= 9, 3.0, 0.0)
    series = {"u0": treated, **donors}

    frames = []
    for u in units:
        frames.append(pd.DataFrame({
            "unit": u,
            "period": periods,
            "y": series[u],
            "x1": rng.normal(5.0, 1.0, len(periods)),
        }))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def three_unit_config(three_unit_panel):
    return {
        "df": three_unit_panel,
        "outcome": "gdp",
        "unitid": "unit",
        "time": "year",
        "treated_unit": "A",
        "treatment_time": 2005,
    }


@pytest.fixture
def noisy_config(noisy_panel):
    return {
        "df": noisy_panel,
        "outcome": "y",
        "unitid": "unit",
        "time": "period",
        "treated_unit": "u0",
        "treatment_time": 9,
    }
