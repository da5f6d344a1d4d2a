"""
Cray Node ID Sets

Converts Slurm hostlist expressions for Cray compute nodes (e.g. "nid000[12-15,20]")
into a dense set of numeric node IDs (nids), and renders nid sets back into the
compact range syntax understood by capmc ("12-15,20").
"""

import re
from typing import Iterator, List, Tuple

from loguru import logger

# Largest nid count a single bitmap can track
MAX_NODES = 100000

_ENTRY_RE = re.compile(r"([^\d\[\]]*)(\d*)(?:\[([^\]]*)\]?)?")


class NodeSet:
    """Mutable set of nids backed by a dense membership bitmap."""

    def __init__(self, size: int = MAX_NODES):
        self.size = size
        self._bits = bytearray(size)
        self._count = 0

    def add(self, nid: int) -> None:
        if nid < 0 or nid >= self.size:
            logger.warning(f"Ignoring nid {nid} outside of node bitmap (size {self.size})")
            return
        if not self._bits[nid]:
            self._bits[nid] = 1
            self._count += 1

    def add_range(self, first: int, last: int) -> None:
        """Add every nid from first to last, inclusive."""
        if last >= self.size:
            logger.warning(
                f"Truncating nid range {first}-{last} to node bitmap (size {self.size})"
            )
            last = self.size - 1
        for nid in range(max(first, 0), last + 1):
            self.add(nid)

    def discard(self, nid: int) -> None:
        if 0 <= nid < self.size and self._bits[nid]:
            self._bits[nid] = 0
            self._count -= 1

    def ranges(self) -> List[Tuple[int, int]]:
        """
        Collapse the set into sorted, inclusive (first, last) runs.

        Returns:
            List of (first, last) tuples, e.g. [(1, 3), (5, 5)] for {1, 2, 3, 5}.
        """
        runs: List[Tuple[int, int]] = []
        for nid in self:
            if runs and runs[-1][1] == nid - 1:
                runs[-1] = (runs[-1][0], nid)
            else:
                runs.append((nid, nid))
        return runs

    def __contains__(self, nid: object) -> bool:
        return isinstance(nid, int) and 0 <= nid < self.size and bool(self._bits[nid])

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[int]:
        if not self._count:
            return iter(())
        return (nid for nid, bit in enumerate(self._bits) if bit)

    def __str__(self) -> str:
        return encode_nodeset(self)

    def __repr__(self) -> str:
        return f"NodeSet('{encode_nodeset(self)}')"


def _split_hostlist(hostlist: str) -> List[str]:
    """Split a hostlist on the commas that sit outside of brackets."""
    entries = []
    depth = 0
    current = ""
    for char in hostlist:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(depth - 1, 0)
        if char == "," and depth == 0:
            entries.append(current)
            current = ""
        else:
            current += char
    entries.append(current)
    return [entry.strip() for entry in entries if entry.strip()]


def _add_range_spec(nodes: NodeSet, spec: str, digit_prefix: str = "") -> None:
    """
    Add one "N" or "LO-HI" fragment to the set.

    Descending ranges only contribute their trailing nid. Fragments that are not
    numeric are skipped.
    """
    spec = spec.strip()
    if not spec:
        return

    first_str, sep, last_str = spec.partition("-")
    try:
        first = int(digit_prefix + first_str)
        last = int(digit_prefix + last_str) if sep and last_str else None
    except ValueError:
        logger.debug(f"Skipping malformed range fragment '{spec}'")
        return

    if last is None:
        nodes.add(first)
    elif last >= first:
        nodes.add_range(first, last)
    else:
        nodes.add(last)


def decode_hostlist(hostlist: str, size: int = MAX_NODES) -> NodeSet:
    """
    Decode a hostlist expression into a NodeSet.

    Args:
        hostlist: Expression such as 'nid000[12-15,20]', 'nid00012,nid00040' or '1-3,5'
        size: Size of the node bitmap

    Returns:
        NodeSet with every nid named by the expression. Malformed input yields a
        partial (possibly empty) set rather than an error.
    """
    nodes = NodeSet(size)
    if not hostlist:
        return nodes

    for entry in _split_hostlist(hostlist):
        match = _ENTRY_RE.match(entry)
        prefix, digits, bracket = match.groups()
        if bracket is not None:
            # Digits before "[" lead every number inside: nid001[08-10] is 108..110
            for spec in bracket.split(","):
                _add_range_spec(nodes, spec, digit_prefix=digits)
        else:
            # Bare entry: "nid00012", "12" or "1-3"
            _add_range_spec(nodes, entry[len(prefix):])

    logger.debug(f"Decoded hostlist '{hostlist}' to {len(nodes)} nids")
    return nodes


def encode_nodeset(nodes: NodeSet) -> str:
    """Render a NodeSet as a capmc nid list, e.g. '1-3,5'."""
    parts = []
    for first, last in nodes.ranges():
        parts.append(str(first) if first == last else f"{first}-{last}")
    return ",".join(parts)
