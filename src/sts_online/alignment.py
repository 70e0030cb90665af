"""
In-memory sequence alignments and tip partial likelihoods.
"""

import numpy as np
from typing import Dict, Iterable, Iterator, List, Tuple

from .models import SubstitutionModel

# IUPAC nucleotide ambiguity codes
NUCLEOTIDE_CODES: Dict[str, str] = {
    "A": "A", "C": "C", "G": "G", "T": "T", "U": "T",
    "R": "AG", "Y": "CT", "S": "CG", "W": "AT", "K": "GT", "M": "AC",
    "B": "CGT", "D": "AGT", "H": "ACT", "V": "ACG",
    "N": "ACGT",
}
UNKNOWN_CHARACTERS = "-?.X"


class Alignment:
    """
    Ordered collection of equal-length named sequences.

    Names are not required to be unique here; consumers that need unique
    names (the likelihood engine) check for themselves.
    """

    def __init__(self, sequences: Iterable[Tuple[str, str]]):
        self._names: List[str] = []
        self._sequences: List[str] = []
        for name, sequence in sequences:
            self._names.append(name)
            self._sequences.append(sequence.upper())

        lengths = {len(s) for s in self._sequences}
        if len(lengths) > 1:
            raise ValueError(f"Sequences have differing lengths: {sorted(lengths)}")

    @classmethod
    def from_dict(cls, sequences: Dict[str, str]) -> "Alignment":
        return cls(sequences.items())

    @property
    def names(self) -> List[str]:
        return list(self._names)

    @property
    def num_sequences(self) -> int:
        return len(self._names)

    @property
    def num_sites(self) -> int:
        return len(self._sequences[0]) if self._sequences else 0

    def __len__(self) -> int:
        return self.num_sequences

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.items())

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def items(self) -> List[Tuple[str, str]]:
        return list(zip(self._names, self._sequences))

    def sequence(self, name: str) -> str:
        try:
            return self._sequences[self._names.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def partition(self, reference_names: Iterable[str]) -> Tuple["Alignment", "Alignment"]:
        """
        Split into (reference, query) alignments.

        Args:
            reference_names: Names of sequences already present in the trees

        Returns:
            Tuple of the reference alignment and the remaining query sequences
        """
        reference_names = set(reference_names)
        reference = [(n, s) for n, s in self.items() if n in reference_names]
        query = [(n, s) for n, s in self.items() if n not in reference_names]
        return Alignment(reference), Alignment(query)

    def __repr__(self) -> str:
        return f"Alignment(num_sequences={self.num_sequences}, num_sites={self.num_sites})"


def leaf_partials(sequence: str, model: SubstitutionModel, n_rates: int) -> np.ndarray:
    """
    Partial likelihood vector of an observed sequence.

    Each site gets 1 for every state compatible with the observed symbol
    and 0 elsewhere; the same values are repeated for each rate category.

    Args:
        sequence: Observed sequence
        model: Model supplying the state alphabet
        n_rates: Number of rate categories

    Returns:
        Array of shape (n_rates, n_sites, n_states)
    """
    alphabet = model.alphabet
    state_index = {c: i for i, c in enumerate(alphabet)}
    is_dna = set(alphabet) == set("ACGT")

    tip = np.zeros((len(sequence), len(alphabet)))
    for site, symbol in enumerate(sequence.upper()):
        if symbol in state_index:
            tip[site, state_index[symbol]] = 1.0
        elif symbol in UNKNOWN_CHARACTERS:
            tip[site, :] = 1.0
        elif is_dna and symbol in NUCLEOTIDE_CODES:
            for state in NUCLEOTIDE_CODES[symbol]:
                tip[site, state_index[state]] = 1.0
        else:
            raise ValueError(f"Unrecognized symbol {symbol!r} at site {site}")

    return np.broadcast_to(tip, (n_rates,) + tip.shape).copy()

