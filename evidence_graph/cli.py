"""
Command-line entry point for the evidence graph pipeline.

Usage:
    evidence-graph --input bundle.json --output-dir ./evidence_output
    evidence-graph --input bundle.json --embedding-model text-embedding-3-small --dimensions 256

The input bundle is a JSON object with `responses` (required) and optional
`query`, `claims`, `edges`, `patterns`, `partitions`,
`statement_disruption_scores`, `pruned_statement_ids` and
`referenced_statement_ids`.
"""
import argparse
import asyncio
import logging
import os
import sys

from .config import CONFIG_PRESETS
from .engine import EvidenceGraphArguments, EvidenceGraphRunner
from .errors import EvidenceGraphError, InputValidationError
from .parsing import safe_json_loads
from .schemas import InputBundle, validate_bundle

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run the evidence graph pipeline over a bundle of model responses')

    # Basic arguments
    parser.add_argument('--input', type=str, required=True,
                       help='Path to the JSON input bundle')
    parser.add_argument('--output-dir', type=str, default='./evidence_output',
                       help='Output directory for results')
    parser.add_argument('--query', type=str, default=None,
                       help="The user's question (overrides the bundle's query)")
    parser.add_argument('--preset', type=str, default='balanced',
                       choices=sorted(CONFIG_PRESETS),
                       help='Clustering preset')

    # Embedding configuration
    parser.add_argument('--embedding-model', type=str, default='hashing',
                       help='"hashing" for offline lexical embeddings, otherwise a litellm embedding model name')
    parser.add_argument('--dimensions', type=int, default=None,
                       help="Embedding dimensions (defaults to the preset's)")
    parser.add_argument('--api-key', type=str,
                       default=os.environ.get('OPENAI_API_KEY'),
                       help='Embedding API key')
    parser.add_argument('--api-base', type=str,
                       default=os.environ.get('OPENAI_API_BASE'),
                       help='Embedding API base URL')

    # Output
    parser.add_argument('--no-intermediate', action='store_true',
                       help='Only write the complete results and the report')
    parser.add_argument('--turn-id', type=str, default=None,
                       help='Conversation turn id for the term index cache')
    parser.add_argument('--verbose', action='store_true',
                       help='Debug logging')
    return parser


def load_bundle(path: str) -> InputBundle:
    """Read and validate an input bundle; fenced or slightly malformed JSON is tolerated."""
    with open(path, 'r') as f:
        data = safe_json_loads(f.read())
    return validate_bundle(data)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        bundle = load_bundle(args.input)
    except (OSError, InputValidationError) as e:
        logger.error(f"Could not load input bundle: {e}")
        sys.exit(2)

    if args.query is not None:
        bundle.query = args.query

    hashing = args.embedding_model == 'hashing'
    runner_args = EvidenceGraphArguments(
        output_dir=args.output_dir,
        query=bundle.query,
        preset=args.preset,
        save_intermediate_results=not args.no_intermediate,
        embedding_model_type='hashing' if hashing else 'litellm',
        embedding_model_name=args.embedding_model,
        embedding_dimensions=args.dimensions,
        embedding_api_key=None if hashing else args.api_key,
        embedding_api_base=None if hashing else args.api_base,
        turn_id=args.turn_id,
    )

    logger.info("Initializing Evidence Graph Runner...")
    runner = EvidenceGraphRunner(args=runner_args)

    try:
        asyncio.run(runner.run_bundle(bundle))
    except EvidenceGraphError as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        sys.exit(1)

    runner.summary()
    logger.info(f"Results saved to: {args.output_dir}")


if __name__ == "__main__":
    main()
