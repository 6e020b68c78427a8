"""Session domain models for worker inspection sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

ENTRY = "entry"
EXIT = "exit"


@dataclass
class WorkerSession:
	"""One worker's active work period as stored in the sessions table."""

	id: int
	worker_id: str
	start_time: float
	active: bool = True
	end_time: Optional[float] = None

	def elapsed_seconds(self, now: float) -> int:
		return max(0, int(now - self.start_time))

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"worker_id": self.worker_id,
			"start_time": self.start_time,
			"active": self.active,
			"end_time": self.end_time,
		}


@dataclass
class ScanExpectation:
	"""What the next scan of a session is expected to be.

	`pending_codes` maps every code with an active item to its start time;
	each of those codes expects its own exit scan while any other code
	still opens a new item.
	"""

	expected: str = ENTRY
	pending_code: Optional[str] = None
	last_scan_time: Optional[float] = None
	pending_codes: Dict[str, float] = field(default_factory=dict)

	def expects_exit(self, code: str) -> bool:
		return code in self.pending_codes

	def opened(self, code: str, at: float) -> None:
		self.pending_codes[code] = at
		self.expected = EXIT
		self.pending_code = code
		self.last_scan_time = at

	def closed(self, code: str, at: float) -> None:
		self.pending_codes.pop(code, None)
		self.last_scan_time = at
		if self.pending_codes:
			# Most recently opened code is the one shown as pending.
			self.pending_code = max(self.pending_codes, key=self.pending_codes.get)
			self.expected = EXIT
		else:
			self.pending_code = None
			self.expected = ENTRY

	def to_dict(self) -> dict:
		return {
			"expected": self.expected,
			"pending_code": self.pending_code,
			"last_scan_time": self.last_scan_time,
			"pending_codes": sorted(self.pending_codes),
		}


@dataclass
class SessionTick:
	"""Published by a session timer on every tick."""

	session_id: int
	worker_id: str
	start_time: float
	elapsed_seconds: int
	timestamp: float
