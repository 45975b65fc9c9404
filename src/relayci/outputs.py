# outputs.py
from __future__ import annotations

import re
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .errors import OutputNotReadyError, RelayError
from .model import Job, JobStatus

# ---------------------------------------------------------------------
# Step-side protocol
# ---------------------------------------------------------------------
# A step publishes outputs by appending to the file named by
# $RELAYCI_OUTPUT, one of:
#
#   key=value
#   key<<EOF
#   multi-line value
#   EOF
#
# The legacy stdout command is also honoured:
#   ::set-output name=key::value
# ---------------------------------------------------------------------

OUTPUT_ENV_VAR = "RELAYCI_OUTPUT"
# same file, GitHub Actions name
OUTPUT_ENV_ALIASES = ("GITHUB_OUTPUT",)

_SET_OUTPUT = re.compile(r"^::set-output name=([^:]+)::(.*)$")
_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def parse_output_file(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            key, delim = key.strip(), delim.strip()
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise RelayError(f"Unterminated output block for '{key}' (missing {delim!r})")
            i += 1
            out[_check_key(key)] = "\n".join(body)
            continue
        if "=" not in line:
            raise RelayError(f"Malformed output line: {line!r}")
        key, value = line.split("=", 1)
        out[_check_key(key.strip())] = value
    return out


def parse_set_output_commands(stdout: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in stdout.splitlines():
        m = _SET_OUTPUT.match(line.strip())
        if m:
            out[m.group(1).strip()] = m.group(2)
    return out


def collect_step_outputs(stdout: str, output_file: Optional[Path]) -> Dict[str, str]:
    """Merge stdout commands and the output file; the file wins on conflicts."""
    outputs = parse_set_output_commands(stdout)
    if output_file is not None and output_file.exists():
        outputs.update(parse_output_file(output_file.read_text(encoding="utf-8")))
    return outputs


def _check_key(key: str) -> str:
    if not _KEY.match(key):
        raise RelayError(f"Invalid output name: {key!r}")
    return key


# ---------------------------------------------------------------------
# Run-side store
# ---------------------------------------------------------------------

class OutputStore:
    """
    Write-once-per-job, read-many store of job outputs for one run.

    Values become visible only after the producing job finalized as
    succeeded. Reads of anything else raise OutputNotReadyError.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._published: Dict[str, Tuple[JobStatus, Mapping[str, str]]] = {}

    def publish(self, job: str, status: JobStatus, outputs: Mapping[str, str]) -> None:
        if not status.terminal:
            raise RelayError(f"Cannot publish outputs for '{job}' while {status.value}")
        frozen = MappingProxyType(dict(outputs) if status is JobStatus.SUCCEEDED else {})
        with self._lock:
            if job in self._published:
                raise RelayError(f"Outputs for '{job}' were already published")
            self._published[job] = (status, frozen)

    def status(self, job: str) -> Optional[JobStatus]:
        with self._lock:
            entry = self._published.get(job)
        return entry[0] if entry else None

    def outputs(self, job: str) -> Mapping[str, str]:
        with self._lock:
            entry = self._published.get(job)
        if entry is None or entry[0] is not JobStatus.SUCCEEDED:
            raise OutputNotReadyError(job, status=entry[0].value if entry else None)
        return entry[1]

    def get(self, job: str, key: str) -> str:
        values = self.outputs(job)
        if key not in values:
            raise KeyError(f"{job}.{key}")
        return values[key]

    def resolve(self, reference: str) -> str:
        """Resolve a `<job_id>.<output_key>` reference."""
        job, sep, key = reference.partition(".")
        if not sep or not job or not key:
            raise RelayError(f"Output reference must look like '<job>.<key>', got {reference!r}")
        return self.get(job, key)

    def view_for(self, job: Job) -> "ScopedOutputs":
        return ScopedOutputs(self, job.needs)


class ScopedOutputs:
    """Outputs visible to one job: only those of the jobs it needs."""

    def __init__(self, store: OutputStore, needs: Iterable[str]):
        self._store = store
        self._needs = frozenset(needs)

    def resolve(self, reference: str) -> str:
        job = reference.partition(".")[0]
        if job not in self._needs:
            raise RelayError(f"Output '{reference}' is not visible: '{job}' is not listed in needs")
        try:
            return self._store.resolve(reference)
        except KeyError:
            raise RelayError(f"Job '{job}' did not publish output '{reference.partition('.')[2]}'") from None

    def inputs_env(self, inputs: Mapping[str, str]) -> Dict[str, str]:
        return {name: self.resolve(ref) for name, ref in inputs.items()}
