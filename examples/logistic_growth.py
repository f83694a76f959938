"""
Bayesian ODE Workflow — Logistic Growth Example
===============================================
Fits dN/dt = r N (1 - N/K) to a single noisy culture with the initial
population N0 estimated alongside r and K.

Workflow:
1. Simulate a noisy culture (r=0.2, K=500, N0=10) and write it as CSV
2. Load the CSV with DatasetShaper
3. Calibrate with DEMetropolisZ (4 chains)
4. Check R-hat / ESS
5. Posterior predictive bands on a dense grid, and a prior predictive check
"""

import numpy as np
from pathlib import Path

from bayes_ode import (
    BayesianCalibrator,
    CalibrationConfig,
    DatasetShaper,
    FreeInitial,
    NoiseModel,
    Parameter,
    PosteriorPredictor,
    PriorSpec,
    build_model_spec,
    diagnose,
    logistic_growth,
    simulate_dataset,
    summarize_posterior,
)


def lognormal(median: float, sigma: float = 0.5) -> PriorSpec:
    return PriorSpec('lognormal', {'mu': float(np.log(median)), 'sigma': sigma})


def main(output_dir: str = 'example_output'):
    # Step 1: Synthetic data
    print("[1/5] Simulating culture...")
    csv_path = Path(output_dir) / 'logistic_culture.csv'
    simulate_dataset(logistic_growth(), {'r': 0.2, 'K': 500.0}, [10.0],
                     np.linspace(0.0, 50.0, 26), noise_sd=10.0, seed=1,
                     output_path=csv_path)

    # Step 2: Load
    print("\n[2/5] Loading data...")
    data = DatasetShaper(verbose=True).load_csv(csv_path)

    # Step 3: Model and calibration
    print("\n[3/5] Calibrating...")
    spec = build_model_spec(
        system=logistic_growth(),
        parameters=[
            Parameter('r', lognormal(0.3)),
            Parameter('K', lognormal(400.0)),
        ],
        noise=NoiseModel('normal', PriorSpec('halfnormal', {'sigma': 20.0})),
        initial_conditions={'N': FreeInitial(lognormal(10.0))},
        verbose=True,
    )
    config = CalibrationConfig(n_chains=4, n_tune=2000, n_draws=2000, seed=42)
    calibrator = BayesianCalibrator(spec, config)
    samples = calibrator.calibrate(data)

    summary = summarize_posterior(samples)
    print("\nPosterior (mean [95% HDI]):")
    for name, stats in summary.items():
        print(f"  {name:10s}: {stats['mean']:8.3f} [{stats['ci_lower']:.3f}, {stats['ci_upper']:.3f}]")

    # Step 4: Diagnostics
    print("\n[4/5] Diagnostics...")
    report = diagnose(samples)
    print(report.summary())

    # Step 5: Predictive
    print("\n[5/5] Predictive simulation...")
    predictor = PosteriorPredictor(spec, data)
    t_dense = np.linspace(0.0, 60.0, 121)
    posterior = predictor.posterior_predictive(samples, n_draws=200, t_eval=t_dense, seed=7)
    bands = posterior.quantiles([0.025, 0.5, 0.975])
    bands.to_csv(Path(output_dir) / 'logistic_posterior_bands.csv', index=False)
    print(f"  Posterior predictive: {len(posterior)} trajectories, "
          f"{posterior.failure_fraction():.0%} failed")

    prior = predictor.prior_predictive(n_draws=200, t_eval=t_dense, seed=7)
    final = prior.quantiles([0.05, 0.95])
    final = final[final['time'] == t_dense[-1]]
    print(f"  Prior predictive N(60) 90% band: "
          f"[{final['q0.05'].iloc[0]:.1f}, {final['q0.95'].iloc[0]:.1f}]")

    samples.to_dataframe().to_csv(Path(output_dir) / 'logistic_posterior.csv', index=False)
    print(f"\n✓ Outputs written to {output_dir}/")


if __name__ == '__main__':
    main()
