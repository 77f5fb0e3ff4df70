"""
Sample extraction from Prometheus query results

Prometheus answers with several result shapes (vector, matrix, scalar,
string) and exporters disagree on label names. Everything that decodes
those shapes lives here; callers only ever see GPUSample objects.
"""

import math
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Iterable, Tuple

from .models.sample import GPUSample, MetricKind, UNKNOWN


logger = logging.getLogger(__name__)

# Candidate label keys, in lookup order
JOB_LABELS = ('hpc_job', 'slurm_job_id', 'job_id', 'jobid')
HOSTNAME_LABELS = ('Hostname', 'hostname', 'instance', 'node', 'host')
DEVICE_LABELS = ('gpu', 'GPU_I_ID', 'device', 'minor_number', 'UUID')
MODEL_LABELS = ('modelName', 'model_name', 'gpu_model')


def extract_numeric_value(raw: Any) -> Optional[float]:
   """
   Convert a raw sample value to a finite float

   Args:
      raw: String, number, [timestamp, value] pair or {"time", "value"} object

   Returns:
      Float value, or None when the value is missing, unparsable or not finite
   """
   if isinstance(raw, dict):
      raw = raw.get('value')
   elif isinstance(raw, (list, tuple)):
      raw = raw[1] if len(raw) >= 2 else None

   if raw is None or isinstance(raw, bool):
      return None

   try:
      value = float(raw)
   except (TypeError, ValueError):
      return None

   if not math.isfinite(value):
      return None
   return value


def _extract_timestamp(raw: Any) -> Optional[datetime]:
   if isinstance(raw, dict):
      raw = raw.get('time')
   elif isinstance(raw, (list, tuple)):
      raw = raw[0] if raw else None
   else:
      return None

   try:
      return datetime.fromtimestamp(float(raw), tz=timezone.utc)
   except (TypeError, ValueError, OverflowError, OSError):
      return None


def get_label(labels: Dict[str, Any], candidates: Iterable[str], default: str = UNKNOWN) -> str:
   """Return the first present, non-empty candidate label"""
   for key in candidates:
      value = labels.get(key)
      if value is not None and value != '':
         return str(value)
   return default


def _get_job_label(labels: Dict[str, Any]) -> str:
   # An explicit empty job label is a sentinel, not a missing label
   for key in JOB_LABELS:
      if key in labels and labels[key] is not None:
         return str(labels[key])
   return UNKNOWN


def _series_labels(item: Dict[str, Any]) -> Dict[str, Any]:
   metric = item.get('metric')
   if not isinstance(metric, dict):
      return {}
   nested = metric.get('labels')
   if isinstance(nested, dict):
      return nested
   return metric


def _unwrap(result: Any) -> Tuple[Optional[str], Any]:
   """Return (result_type, result) from a response, its data, or a bare result list"""
   if isinstance(result, dict):
      if 'data' in result and isinstance(result['data'], dict):
         result = result['data']
      return result.get('resultType'), result.get('result')
   if isinstance(result, list):
      return 'vector', result
   return None, None


def _make_sample(labels: Dict[str, Any], kind: MetricKind, raw_value: Any) -> Optional[GPUSample]:
   value = extract_numeric_value(raw_value)
   if value is None:
      return None
   return GPUSample(
      job_id=_get_job_label(labels),
      hostname=get_label(labels, HOSTNAME_LABELS),
      device=get_label(labels, DEVICE_LABELS),
      device_model=get_label(labels, MODEL_LABELS),
      kind=kind,
      value=value,
      timestamp=_extract_timestamp(raw_value)
   )


def extract_samples(result: Any, kind: MetricKind,
                    include_unassigned: bool = False) -> List[GPUSample]:
   """
   Decode a query result into samples

   Args:
      result: Query response, its `data` member or a bare vector list
      kind: Metric kind to stamp on each sample
      include_unassigned: Keep samples whose job label is a sentinel or missing

   Returns:
      List of samples; malformed items are dropped, never raised
   """
   result_type, items = _unwrap(result)
   samples: List[GPUSample] = []

   if result_type in ('scalar', 'string'):
      # Single unlabeled sample; there is no job label to filter on
      sample = _make_sample({}, kind, items)
      if sample is not None:
         samples.append(sample)
      return samples

   if not isinstance(items, list):
      return samples

   for item in items:
      if not isinstance(item, dict):
         continue
      labels = _series_labels(item)

      if 'values' in item and isinstance(item['values'], list):
         raw_values = item['values']
      elif 'value' in item:
         raw_values = [item['value']]
      else:
         continue

      for raw_value in raw_values:
         sample = _make_sample(labels, kind, raw_value)
         if sample is None:
            continue
         if not include_unassigned and not sample.is_assigned:
            continue
         samples.append(sample)

   return samples


def extract_value(result: Any) -> Optional[float]:
   """First numeric value of a result, or None"""
   result_type, items = _unwrap(result)

   if result_type in ('scalar', 'string'):
      return extract_numeric_value(items)

   if not isinstance(items, list):
      return None

   for item in items:
      if not isinstance(item, dict):
         continue
      if 'value' in item:
         value = extract_numeric_value(item['value'])
      elif isinstance(item.get('values'), list) and item['values']:
         value = extract_numeric_value(item['values'][-1])
      else:
         value = None
      if value is not None:
         return value
   return None


def extract_count(result: Any) -> int:
   """Number of series in a vector or matrix result"""
   result_type, items = _unwrap(result)
   if result_type in ('scalar', 'string'):
      return 1 if extract_numeric_value(items) is not None else 0
   if not isinstance(items, list):
      return 0
   return sum(1 for item in items if isinstance(item, dict))


def extract_labeled_values(result: Any, label_candidates: Iterable[str]) -> Dict[str, float]:
   """
   Map one label of each series to its value

   Used for recording rules that carry one series per job.
   """
   candidates = tuple(label_candidates)
   values: Dict[str, float] = {}
   _, items = _unwrap(result)
   if not isinstance(items, list):
      return values

   for item in items:
      if not isinstance(item, dict):
         continue
      key = get_label(_series_labels(item), candidates)
      raw_value = item.get('value')
      if raw_value is None and isinstance(item.get('values'), list) and item['values']:
         raw_value = item['values'][-1]
      value = extract_numeric_value(raw_value)
      if key != UNKNOWN and value is not None:
         values[key] = value
   return values
