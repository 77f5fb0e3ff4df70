"""
Slurm job data structure
"""

from typing import Dict, Any, Optional
from dataclasses import dataclass


RUNNING_STATE = "RUNNING"


def normalize_job_state(raw_state: Any) -> str:
   """
   Normalize a Slurm job_state value to an upper-case string

   Newer REST API versions return job_state as a list of flags; the first
   entry is the primary state.
   """
   if isinstance(raw_state, (list, tuple)):
      raw_state = raw_state[0] if raw_state else ""
   if raw_state is None:
      return ""
   return str(raw_state).strip().upper()


@dataclass
class JobInfo:
   """Represents a Slurm job as seen by the liveness resolver"""

   job_id: str
   user_name: Optional[str] = None
   account: Optional[str] = None
   state: str = ""

   @property
   def is_running(self) -> bool:
      return self.state == RUNNING_STATE

   @classmethod
   def from_slurm_json(cls, job_data: Dict[str, Any]) -> 'JobInfo':
      """Create JobInfo from one entry of the Slurm REST /jobs listing"""
      job_id = job_data.get('job_id', '')
      return cls(
         job_id=str(job_id) if job_id is not None else '',
         user_name=job_data.get('user_name'),
         account=job_data.get('account'),
         state=normalize_job_state(job_data.get('job_state'))
      )

   def to_dict(self) -> Dict[str, Any]:
      return {
         'job_id': self.job_id,
         'user_name': self.user_name,
         'account': self.account,
         'state': self.state,
         'is_running': self.is_running
      }

   def __str__(self) -> str:
      return f"Job {self.job_id} ({self.user_name}): {self.state}"
