import argparse
import asyncio
import logging
import random
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ballot.election_models import (
    Ballot,
    BallotChoice,
    BallotContest,
    BallotStyle,
    ChainingMode,
    Choice,
    Contest,
    Manifest,
)
from config.config import SystemConfig, load_config
from group.group_arithmetic import ElectionGuardError
from integrated_election_system import IntegratedElectionSystem
from utils.utils import format_duration, setup_logging

logger = logging.getLogger(__name__)


def create_demo_manifest(num_candidates: int = 3) -> Manifest:
    """One single-winner race and one yes/no referendum on a single ballot style"""
    candidates = [
        Choice(id=f"candidate-{i}", name=f"Candidate {i}", index=i + 1)
        for i in range(num_candidates)
    ]
    return Manifest(
        election_id="demo-election",
        contests=[
            Contest(id="mayor", name="Mayor", index=1, selection_limit=1,
                    option_selection_limit=1, choices=candidates),
            Contest(id="referendum", name="Referendum", index=2, selection_limit=1,
                    option_selection_limit=1,
                    choices=[Choice(id="yes", name="Yes", index=1), Choice(id="no", name="No", index=2)]),
        ],
        ballot_styles=[BallotStyle(id="default", name="Default", contest_ids=["mayor", "referendum"])],
        include_overvotes=True,
        include_undervotes=True,
        chaining_mode=ChainingMode.SIMPLE,
    )


def create_demo_ballots(manifest: Manifest, num_voters: int, device_ids: Sequence[str],
                        seed: int = 42) -> List[Tuple[str, Ballot]]:
    rng = random.Random(seed)
    ballots = []
    for i in range(num_voters):
        contests = []
        for contest in manifest.contests:
            chosen = rng.choice(contest.choices).id
            contests.append(BallotContest(
                id=contest.id,
                choices=[BallotChoice(id=choice.id, value=int(choice.id == chosen)) for choice in contest.choices],
            ))
        ballot = Ballot(id=f"ballot-{i:04d}", ballot_style_id="default", contests=contests)
        ballots.append((device_ids[i % len(device_ids)], ballot))
    return ballots


async def run_demo(config: SystemConfig, num_voters: int, num_candidates: int,
                   decrypt_with: Optional[List[int]] = None) -> bool:
    print("=" * 80)
    print("VERIFIABLE ELECTION DEMONSTRATION")
    print("=" * 80)

    manifest = create_demo_manifest(num_candidates)
    system = IntegratedElectionSystem(manifest, config)

    print(f"\nRunning key ceremony with {system.params.n} guardians (threshold {system.params.k})...")
    await system.initialize()

    device_ids = config.ballots.device_ids
    print(f"Encrypting {num_voters} ballots on {len(device_ids)} devices...")
    await system.cast_ballots(create_demo_ballots(manifest, num_voters, device_ids))

    print("Aggregating and decrypting the tally...")
    await system.compute_tally()
    tally = await system.decrypt_tally(decrypt_with)

    print("Verifying the election record...")
    report = await system.verify_election()

    print("\n" + "=" * 40)
    print("ELECTION RESULTS")
    print("=" * 40)
    for contest_id, counts in tally.counts.items():
        print(f"\n{contest_id}:")
        for choice_id, count in counts.items():
            print(f"  {choice_id}: {count} votes")

    print(f"\nChecks passed: {', '.join(check.name for check in report.checks_passed)}")
    summary = system.monitor.get_summary()
    print(f"Total time: {format_duration(summary['total_duration'])}")

    if config.enable_benchmarking:
        report_path = system.save_report(config.results_dir, tally, report)
        print(f"\nFull results saved to: {report_path}")

    return True


def main():
    parser = argparse.ArgumentParser(
        description='Verifiable election with threshold guardians')
    parser.add_argument('--voters', type=int, default=10,
                        help='Number of ballots to cast')
    parser.add_argument('--candidates', type=int, default=3,
                        help='Number of candidates in the demo race')
    parser.add_argument('--guardians', type=int, default=None,
                        help='Number of guardians (overrides the config file)')
    parser.add_argument('--threshold', type=int, default=None,
                        help='Decryption threshold (overrides the config file)')
    parser.add_argument('--decrypt-with', type=int, nargs='+', default=None,
                        help='Guardian indices that take part in decryption')
    parser.add_argument('--config', type=str,
                        default='config.yaml', help='Config file path')

    args = parser.parse_args()

    config = load_config(Path(args.config))
    if args.guardians is not None:
        config.parameters.num_guardians = args.guardians
    if args.threshold is not None:
        config.parameters.threshold = args.threshold

    setup_logging(config.log_level, config.log_dir / "election.log")

    try:
        success = asyncio.run(run_demo(config, args.voters, args.candidates, args.decrypt_with))
    except ElectionGuardError as e:
        logger.error(f"Election failed: {e}")
        print(f"\nElection failed: {e}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
