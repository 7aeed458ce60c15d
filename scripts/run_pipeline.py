#!/usr/bin/env python3
"""
Run the crypto forecast comparison pipeline.

Usage:
    python scripts/run_pipeline.py                         # Run full pipeline
    python scripts/run_pipeline.py --step preprocess       # Stop after a stage
    python scripts/run_pipeline.py --coins bitcoin solana  # Specific coins
    python scripts/run_pipeline.py --allow-partial         # Keep going if a coin fails
    python scripts/run_pipeline.py --horizon 7             # Forecast a week ahead
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from crypto_pipeline.config import Config
from crypto_pipeline.exceptions import ValidationError
from crypto_pipeline.pipeline import Pipeline, PipelineState

STEPS = {
    'all': None,
    'collect': PipelineState.COLLECTING,
    'preprocess': PipelineState.PREPROCESSING,
    'train': PipelineState.TRAINING,
    'evaluate': PipelineState.EVALUATING,
}


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Crypto Forecast Comparison Pipeline"
    )

    parser.add_argument(
        '--config',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--step',
        type=str,
        choices=list(STEPS),
        default='all',
        help='Last pipeline stage to run'
    )

    parser.add_argument(
        '--coins',
        type=str,
        nargs='+',
        help='CoinGecko ids to process (overrides the config)'
    )

    parser.add_argument(
        '--allow-partial',
        action='store_true',
        help='Continue with the remaining coins when some fail to download'
    )

    parser.add_argument(
        '--save-models',
        action='store_true',
        help='Persist trained models to the storage path'
    )

    parser.add_argument(
        '--horizon',
        type=int,
        default=0,
        help='Days to forecast past the collected data after a full run'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    overrides = {'assets': args.coins}
    if args.allow_partial:
        overrides['allow_partial'] = True

    try:
        # Load configuration
        config = Config(args.config)
        parameters = config.parameter_set(**overrides)
    except ValidationError as e:
        print("Invalid pipeline parameters:", file=sys.stderr)
        for message in e.messages:
            print(f"  - {message}", file=sys.stderr)
        return 2

    # Set logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.save_models:
        config.set('storage', 'enabled', True)

    pipeline = Pipeline.from_config(config, parameters=parameters)

    print(f"\n{'='*60}")
    print("CRYPTO FORECAST PIPELINE")
    print(f"{'='*60}")
    print(f"Coins: {parameters.ordered_assets}")
    print(f"Step: {args.step}")
    print(f"{'='*60}\n")

    until = STEPS[args.step]
    run = pipeline.run(until=until)

    summary = run.summary()
    print(json.dumps(
        {k: summary[k] for k in ('run_id', 'state', 'stages', 'assets', 'errors', 'failure')},
        indent=2
    ))

    if run.evaluation is not None:
        print("\nResults:")
        print(run.evaluation.to_frame().to_string(index=False))
        print("\nAggregate:")
        print(run.evaluation.aggregate_frame().to_string())
        print(f"\nOverall winner: {run.evaluation.overall_winner}")

    if args.horizon > 0 and run.state == PipelineState.DONE:
        predictions = pipeline.forecast(args.horizon)
        print(f"\n{args.horizon}-day forecast:")
        print(predictions.summary_frame().to_string(index=False))

    # Exit with appropriate code
    if until is None:
        success = run.state == PipelineState.DONE
    else:
        success = run.state != PipelineState.FAILED
    return 0 if success else 1


if __name__ == '__main__':
    sys.exit(main())
