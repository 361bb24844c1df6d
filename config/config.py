import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from group.group_arithmetic import (
    G_DEFAULT_HEX,
    P_DEFAULT_HEX,
    Q_DEFAULT_HEX,
    R_DEFAULT_HEX,
    VERSION_DEFAULT,
    CryptographicParameters,
    ElectionParameters,
    InvalidInputError,
)

logger = logging.getLogger(__name__)


@dataclass
class ParameterConfig:
    version: str = VERSION_DEFAULT
    p_hex: str = P_DEFAULT_HEX
    q_hex: str = Q_DEFAULT_HEX
    r_hex: str = R_DEFAULT_HEX
    g_hex: str = G_DEFAULT_HEX
    num_guardians: int = 3
    threshold: int = 2

    def is_default_group(self) -> bool:
        return (self.p_hex, self.q_hex, self.r_hex, self.g_hex) == (
            P_DEFAULT_HEX, Q_DEFAULT_HEX, R_DEFAULT_HEX, G_DEFAULT_HEX)

    def to_parameters(self) -> ElectionParameters:
        cryptographic = CryptographicParameters.from_hex(
            self.version, self.p_hex, self.q_hex, self.r_hex, self.g_hex)
        if not self.is_default_group() and not cryptographic.is_well_formed():
            raise InvalidInputError("Configured group parameters are not well formed")
        return ElectionParameters.create(self.num_guardians, self.threshold, cryptographic)


@dataclass
class BallotConfig:
    device_ids: list = field(default_factory=lambda: ["device-1"])
    encryption_workers: int = 4
    verification_workers: int = 4
    tally_shards: int = 2


@dataclass
class SystemConfig:
    parameters: ParameterConfig = field(default_factory=ParameterConfig)
    ballots: BallotConfig = field(default_factory=BallotConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    log_level: str = "INFO"
    enable_benchmarking: bool = True

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            param_data = config_data.get('parameters', {})
            defaults = ParameterConfig()
            parameters = ParameterConfig(
                version=param_data.get('version', defaults.version),
                p_hex=param_data.get('p', defaults.p_hex),
                q_hex=param_data.get('q', defaults.q_hex),
                r_hex=param_data.get('r', defaults.r_hex),
                g_hex=param_data.get('g', defaults.g_hex),
                num_guardians=param_data.get('num_guardians', 3),
                threshold=param_data.get('threshold', 2)
            )

            ballot_data = config_data.get('ballots', {})
            ballots = BallotConfig(
                device_ids=list(ballot_data.get('device_ids', ["device-1"])),
                encryption_workers=ballot_data.get('encryption_workers', 4),
                verification_workers=ballot_data.get('verification_workers', 4),
                tally_shards=ballot_data.get('tally_shards', 2)
            )

            return SystemConfig(
                parameters=parameters,
                ballots=ballots,
                log_dir=Path(config_data.get('log_dir', 'logs')),
                results_dir=Path(config_data.get('results_dir', 'results')),
                log_level=config_data.get('log_level', 'INFO'),
                enable_benchmarking=config_data.get('enable_benchmarking', True)
            )
        except (OSError, yaml.YAMLError, AttributeError, TypeError) as e:
            logger.warning(f"Could not load config file {config_path}: {e}")
            logger.warning("Using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    parameters = {
        'num_guardians': config.parameters.num_guardians,
        'threshold': config.parameters.threshold,
    }
    # Only custom groups are written out
    if config.parameters.version != VERSION_DEFAULT or not config.parameters.is_default_group():
        parameters.update({
            'version': config.parameters.version,
            'p': config.parameters.p_hex,
            'q': config.parameters.q_hex,
            'r': config.parameters.r_hex,
            'g': config.parameters.g_hex,
        })

    config_data = {
        'parameters': parameters,
        'ballots': {
            'device_ids': list(config.ballots.device_ids),
            'encryption_workers': config.ballots.encryption_workers,
            'verification_workers': config.ballots.verification_workers,
            'tally_shards': config.ballots.tally_shards
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'log_level': config.log_level,
        'enable_benchmarking': config.enable_benchmarking
    }

    try:
        with open(config_path, 'w') as f:
            yaml.dump(config_data, f, default_flow_style=False)
    except OSError as e:
        logger.warning(f"Could not save config file {config_path}: {e}")
