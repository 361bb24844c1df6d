"""
Integrated Verifiable Election System
=====================================
In-memory driver for one election: guardian key ceremony, ballot
encryption on one or more chained devices, sharded homomorphic tally,
threshold decryption by any k guardians, and full record verification.

CPU-bound cryptography runs on the default executor so independent
guardians, devices and tally shards proceed concurrently.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ballot.ballot_encryption import BallotEncryptor, EncryptedBallot, EncryptionRecord
from ballot.election_models import Ballot, Manifest
from config.config import SystemConfig
from group.group_arithmetic import ElectionGuardError, ElectionParameters
from keyceremony.key_ceremony import Guardian, GuardianEncryptedShare, GuardianRecord
from tally.tally_decryption import DecryptedTally, EncryptedTally, TallyAdmin, TallyGuardian
from utils.utils import PerformanceMonitor, create_performance_report, save_results
from verify.verification import VerificationCheck, VerificationReport, VerificationSuite

logger = logging.getLogger(__name__)


class ElectionStateError(ElectionGuardError):
    """Raised when a stage runs before the stage it depends on"""
    pass


class IntegratedElectionSystem:
    """
    Runs an election end to end:
    1. Key ceremony: n guardians share the vote and auxiliary-data keys
    2. Encryption: ballots encrypted per device with chained confirmation codes
    3. Tally: sharded homomorphic aggregation merged into one tally
    4. Decryption: any k guardians combine partial decryptions
    5. Verification: the nine record checks over ballots and tally
    """

    def __init__(
        self,
        manifest: Manifest,
        config: Optional[SystemConfig] = None,
        params: Optional[ElectionParameters] = None,
    ):
        self.manifest = manifest
        self.config = config or SystemConfig()
        self.params = params or self.config.parameters.to_parameters()
        self.monitor = PerformanceMonitor()

        self.guardians: List[Guardian] = []
        self.guardian_record: Optional[GuardianRecord] = None
        self.encryption_record: Optional[EncryptionRecord] = None

        self.encrypted_ballots: List[EncryptedBallot] = []
        self.tally: Optional[EncryptedTally] = None
        self._encryptors: Dict[str, BallotEncryptor] = {}
        self._last_codes: Dict[str, bytes] = {}
        self._device_locks: Dict[str, asyncio.Lock] = {}

        self._initialized = False
        self._lock = asyncio.Lock()

        logger.info(
            f"Election {manifest.election_id}: {self.params.n} guardians, threshold {self.params.k}, "
            f"{len(manifest.contests)} contests")

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # ------------------------------------------------------------------
    # Key ceremony
    # ------------------------------------------------------------------

    async def initialize(self):
        async with self._lock:
            if self._initialized:
                return

            record = await self.run_key_ceremony()
            self.encryption_record = EncryptionRecord.create(self.params, self.manifest, record)
            self.tally = EncryptedTally(self.manifest, self.params)
            self._initialized = True

            logger.info(
                f"Election initialized; extended base hash {self.encryption_record.extended_base_hash.hex()[:16]}...")

    async def run_key_ceremony(self) -> GuardianRecord:
        start_time = time.time()
        self.guardians = [Guardian(index, self.params) for index in range(1, self.params.n + 1)]

        with self.monitor.start_operation("key_generation", guardians=self.params.n):
            await asyncio.gather(*(self._run(g.generate_keys) for g in self.guardians))

        # Every view is collected before any share is encrypted
        views = [guardian.public_view() for guardian in self.guardians]

        with self.monitor.start_operation("share_exchange", guardians=self.params.n):
            outgoing = await asyncio.gather(*(self._run(g.encrypt_shares, views) for g in self.guardians))

            inbox: Dict[int, List[GuardianEncryptedShare]] = {g.index: [] for g in self.guardians}
            for shares in outgoing:
                for share in shares:
                    inbox[share.destination_index].append(share)

            await asyncio.gather(*(self._run(g.decrypt_shares, inbox[g.index]) for g in self.guardians))

        record = GuardianRecord.create(self.params, views)
        with self.monitor.start_operation("guardian_record_verification"):
            await asyncio.gather(*(self._run(g.verify, record) for g in self.guardians))

        self.guardian_record = record
        logger.info(f"Key ceremony complete in {time.time() - start_time:.2f}s")
        return record

    def _require_initialized(self, action: str):
        if not self._initialized:
            raise ElectionStateError(f"Cannot {action} before the key ceremony")

    # ------------------------------------------------------------------
    # Ballots
    # ------------------------------------------------------------------

    def _encryptor(self, device_id: str) -> BallotEncryptor:
        if device_id not in self._encryptors:
            self._encryptors[device_id] = BallotEncryptor(self.encryption_record, device_id)
            self._device_locks[device_id] = asyncio.Lock()
        return self._encryptors[device_id]

    async def cast_ballot(self, ballot: Ballot, device_id: str) -> EncryptedBallot:
        """Encrypt one ballot, continuing the device's confirmation chain"""
        if not self._initialized:
            await self.initialize()

        encryptor = self._encryptor(device_id)
        async with self._device_locks[device_id]:
            previous = self._last_codes.get(device_id)
            with self.monitor.start_operation("ballot_encryption", device=device_id):
                encrypted = await self._run(encryptor.encrypt, ballot, previous)
            self._last_codes[device_id] = encrypted.confirmation_code
            self.encrypted_ballots.append(encrypted)

        logger.info(f"Ballot {ballot.id} cast on {device_id}")
        return encrypted

    async def cast_ballots(self, ballots: Sequence[Tuple[str, Ballot]]) -> List[EncryptedBallot]:
        """Ballots as (device id, ballot); devices run in parallel, each in order"""
        by_device: Dict[str, List[Ballot]] = {}
        for device_id, ballot in ballots:
            by_device.setdefault(device_id, []).append(ballot)

        async def run_device(device_id: str, device_ballots: List[Ballot]) -> List[EncryptedBallot]:
            return [await self.cast_ballot(ballot, device_id) for ballot in device_ballots]

        results = await asyncio.gather(*(
            run_device(device_id, device_ballots) for device_id, device_ballots in by_device.items()))
        return [encrypted for device_results in results for encrypted in device_results]

    # ------------------------------------------------------------------
    # Tally
    # ------------------------------------------------------------------

    async def compute_tally(self) -> EncryptedTally:
        """Aggregate every cast ballot into shards, then merge the shards"""
        self._require_initialized("compute the tally")
        if not self.encrypted_ballots:
            raise ElectionStateError("No ballots cast")

        num_shards = max(1, min(self.config.ballots.tally_shards, len(self.encrypted_ballots)))
        shards = [self.encrypted_ballots[i::num_shards] for i in range(num_shards)]

        def aggregate(shard: List[EncryptedBallot]) -> EncryptedTally:
            partial = EncryptedTally(self.manifest, self.params)
            for encrypted in shard:
                partial.add_ballot(encrypted)
            return partial

        with self.monitor.start_operation("tally_aggregation", ballots=len(self.encrypted_ballots)):
            partials = await asyncio.gather(*(self._run(aggregate, shard) for shard in shards))
            tally = EncryptedTally(self.manifest, self.params)
            for partial in partials:
                tally.merge(partial)

        self.tally = tally
        logger.info(f"Aggregated {tally.ballots_cast} ballots in {num_shards} shards")
        return tally

    async def decrypt_tally(self, guardian_indices: Optional[Sequence[int]] = None) -> DecryptedTally:
        """Decrypt with the given guardians (the first k when omitted)"""
        self._require_initialized("decrypt the tally")
        if self.tally is None or self.tally.ballots_cast == 0:
            raise ElectionStateError("No tally computed")

        indices = list(guardian_indices) if guardian_indices is not None else list(range(1, self.params.k + 1))
        by_index = {guardian.index: guardian for guardian in self.guardians}
        unknown = [index for index in indices if index not in by_index]
        if unknown:
            raise ElectionStateError(f"Unknown guardians {unknown}")

        tally_guardians = [
            TallyGuardian(index, by_index[index].secret_shares) for index in indices
        ]
        with self.monitor.start_operation("tally_decryption", guardians=len(indices)):
            partials = await asyncio.gather(*(self._run(tg.decrypt, self.tally) for tg in tally_guardians))
            result = await self._run(
                TallyAdmin(self.params).decrypt, partials, self.tally, self.encryption_record.election_public_keys)

        logger.info(f"Tally decrypted by guardians {sorted(indices)}: {result.counts}")
        return result

    # ------------------------------------------------------------------
    # Verification and reporting
    # ------------------------------------------------------------------

    async def verify_election(self) -> VerificationReport:
        self._require_initialized("verify the election")
        suite = VerificationSuite(
            self.encryption_record,
            expected_parameters=self.params,
            max_workers=self.config.ballots.verification_workers,
        )
        claimed = self.tally.contests if self.tally is not None and self.tally.ballots_cast else None

        with self.monitor.start_operation("verification", ballots=len(self.encrypted_ballots)):
            report = await self._run(suite.verify_all, list(self.encrypted_ballots), claimed)

        logger.info(f"Verification passed: {[check.name for check in report.checks_passed]}")
        return report

    def get_system_metrics(self) -> Dict[str, object]:
        return {
            'election_id': self.manifest.election_id,
            'num_guardians': self.params.n,
            'threshold': self.params.k,
            'devices': sorted(self._encryptors),
            'cast_ballots': len(self.encrypted_ballots),
            'performance': self.monitor.get_summary(),
        }

    def save_report(
        self,
        results_dir: Path,
        tally: Optional[DecryptedTally] = None,
        verification: Optional[VerificationReport] = None,
    ) -> Path:
        results_dir = Path(results_dir)
        results = {
            'election': {
                'election_id': self.manifest.election_id,
                'guardians': f"{self.params.k} of {self.params.n}",
                'ballots_cast': len(self.encrypted_ballots),
                'devices': len(self._encryptors),
            },
            'performance_metrics': {
                'total_duration': self.monitor.get_summary()['total_duration'],
            },
        }
        if tally is not None:
            results['tally'] = tally.counts
        if verification is not None:
            results["verification"] = {check.name: verification.passed(check) for check in VerificationCheck}

        report_path = results_dir / f"{self.manifest.election_id}_report.json"
        save_results(results, report_path)
        with open(results_dir / f"{self.manifest.election_id}_performance.txt", "w") as f:
            f.write(create_performance_report(self.monitor))
        return report_path
