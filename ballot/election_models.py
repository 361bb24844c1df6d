"""Manifest and plaintext ballot data model."""

import json
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional

from group.group_arithmetic import InvalidInputError


class ChainingMode(IntEnum):
    """Confirmation-code chaining per voting device"""
    NONE = 0
    SIMPLE = 1


@dataclass
class Choice:
    id: str
    name: str
    index: int


@dataclass
class Contest:
    id: str
    name: str
    index: int
    selection_limit: int
    option_selection_limit: int
    choices: List[Choice] = field(default_factory=list)

    def __post_init__(self):
        if self.selection_limit < 1 or self.option_selection_limit < 1:
            raise InvalidInputError(f"Contest {self.id} limits must be positive")
        if not self.choices:
            raise InvalidInputError(f"Contest {self.id} has no choices")
        if len({choice.id for choice in self.choices}) != len(self.choices):
            raise InvalidInputError(f"Contest {self.id} has duplicate choice ids")
        if len({choice.index for choice in self.choices}) != len(self.choices):
            raise InvalidInputError(f"Contest {self.id} has duplicate choice indices")

    def choice(self, choice_id: str) -> Choice:
        for choice in self.choices:
            if choice.id == choice_id:
                return choice
        raise KeyError(choice_id)


@dataclass
class BallotStyle:
    id: str
    name: str
    contest_ids: List[str] = field(default_factory=list)


@dataclass
class Manifest:
    """Immutable description of the election supplied by the manifest provider"""
    election_id: str
    contests: List[Contest]
    ballot_styles: List[BallotStyle]
    optional_contest_data_max_length: int = 0
    include_overvotes: bool = False
    include_nullvotes: bool = False
    include_undervotes: bool = False
    include_writeins: bool = False
    chaining_mode: ChainingMode = ChainingMode.NONE

    def __post_init__(self):
        self.chaining_mode = ChainingMode(self.chaining_mode)
        if len({contest.id for contest in self.contests}) != len(self.contests):
            raise InvalidInputError("Manifest has duplicate contest ids")
        if len({contest.index for contest in self.contests}) != len(self.contests):
            raise InvalidInputError("Manifest has duplicate contest indices")
        if len({style.id for style in self.ballot_styles}) != len(self.ballot_styles):
            raise InvalidInputError("Manifest has duplicate ballot style ids")

        known = {contest.id for contest in self.contests}
        for style in self.ballot_styles:
            unknown = [contest_id for contest_id in style.contest_ids if contest_id not in known]
            if unknown:
                raise InvalidInputError(
                    f"Ballot style {style.id} references unknown contests {unknown}")

    def contest(self, contest_id: str) -> Contest:
        for contest in self.contests:
            if contest.id == contest_id:
                return contest
        raise KeyError(contest_id)

    def ballot_style(self, style_id: str) -> BallotStyle:
        for style in self.ballot_styles:
            if style.id == style_id:
                return style
        raise KeyError(style_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['chaining_mode'] = int(self.chaining_mode)
        return data

    def canonical_bytes(self) -> bytes:
        """Byte string bound into the election base hash"""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        contests = [
            Contest(
                id=c['id'],
                name=c['name'],
                index=c['index'],
                selection_limit=c['selection_limit'],
                option_selection_limit=c['option_selection_limit'],
                choices=[Choice(**choice) for choice in c['choices']],
            )
            for c in data['contests']
        ]
        styles = [BallotStyle(**style) for style in data['ballot_styles']]
        return cls(
            election_id=data['election_id'],
            contests=contests,
            ballot_styles=styles,
            optional_contest_data_max_length=data.get('optional_contest_data_max_length', 0),
            include_overvotes=data.get('include_overvotes', False),
            include_nullvotes=data.get('include_nullvotes', False),
            include_undervotes=data.get('include_undervotes', False),
            include_writeins=data.get('include_writeins', False),
            chaining_mode=ChainingMode(data.get('chaining_mode', 0)),
        )


@dataclass
class BallotChoice:
    id: str
    value: int


@dataclass
class BallotContest:
    id: str
    choices: List[BallotChoice]
    num_writeins_selected: int = 0
    contest_data: Optional[str] = None


@dataclass
class Ballot:
    """Plaintext ballot. Input only; never persisted."""
    id: str
    ballot_style_id: str
    contests: List[BallotContest]
    weight: int = 1
