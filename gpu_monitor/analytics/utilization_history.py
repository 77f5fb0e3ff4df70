"""
Utilization History Analyzer for GPU Monitor Analytics

Summarizes the stored per-job GPU aggregates to help identify jobs that
hold GPUs without using them.
"""

from typing import List, Optional

import numpy as np
import pandas as pd

from ..database.repositories import RepositoryFactory
from ..models.gpu_stats import UNDERUTILIZED_THRESHOLD, wasted_gpu_hours


# Utilization histogram bin edges (percent)
DISTRIBUTION_BINS = [0, 10, 20, 30, 50, 70, 90, 100]


class UtilizationHistoryAnalyzer:
   """Analyzer for historical per-job GPU utilization"""

   def __init__(self, repository_factory: Optional[RepositoryFactory] = None):
      self.repo_factory = repository_factory or RepositoryFactory()

   def _load_frame(self, days: int, include_active: bool = True,
                   underutilized_only: bool = False) -> pd.DataFrame:
      repository = self.repo_factory.get_job_gpu_metrics_repository()
      rows = repository.get_recent_metrics(days=days, include_active=include_active,
                                           underutilized_only=underutilized_only)
      if not rows:
         return pd.DataFrame(columns=[
            'job_id', 'avg_utilization', 'max_utilization', 'min_utilization',
            'avg_memory_pct', 'max_memory_pct', 'gpu_count', 'sample_count',
            'first_seen', 'last_seen', 'is_complete', 'hours'
         ])

      df = pd.DataFrame([row.to_dict() for row in rows])
      df['hours'] = [row.observed_hours() for row in rows]
      return df

   def job_table(self, days: int = 7, underutilized_only: bool = False,
                 include_active: bool = True) -> pd.DataFrame:
      """
      Per-job table of stored utilization

      Args:
         days: Number of days to look back
         underutilized_only: Only jobs below the underutilization threshold
         include_active: Include jobs that are still running

      Returns:
         DataFrame sorted by wasted GPU-hours, largest first
      """
      df = self._load_frame(days, include_active, underutilized_only)
      if df.empty:
         return self._create_empty_job_dataframe()

      df['wasted'] = [
         wasted_gpu_hours(avg, int(gpus), hours)
         for avg, gpus, hours in zip(df['avg_utilization'], df['gpu_count'], df['hours'])
      ]
      df = df.sort_values(['wasted', 'job_id'], ascending=[False, True])

      return pd.DataFrame({
         'Job ID': df['job_id'],
         'GPUs': df['gpu_count'].astype(int),
         'Avg Util': df['avg_utilization'].map(lambda v: f"{v:.1f}%"),
         'Min/Max': [f"{lo:.0f}/{hi:.0f}%" for lo, hi in zip(df['min_utilization'], df['max_utilization'])],
         'Memory': df['avg_memory_pct'].map(lambda v: f"{v:.1f}%"),
         'Samples': df['sample_count'].astype(int),
         'Hours': df['hours'].map(lambda v: f"{v:.1f}"),
         'Wasted GPU-h': df['wasted'].map(lambda v: f"{v:.1f}"),
         'Status': df['is_complete'].map(lambda done: 'Complete' if done else 'Active'),
         'Low': (df['avg_utilization'] < UNDERUTILIZED_THRESHOLD).map(lambda low: 'LOW' if low else '')
      }).reset_index(drop=True)

   def utilization_distribution(self, days: int = 7, bins: Optional[List[float]] = None) -> pd.DataFrame:
      """
      Histogram of per-job average utilization

      Returns:
         DataFrame with one row per bucket: range, job count, share and GPU count
      """
      edges = bins or DISTRIBUTION_BINS
      df = self._load_frame(days)
      labels = [f"{lo:g}-{hi:g}%" for lo, hi in zip(edges[:-1], edges[1:])]

      if df.empty:
         return pd.DataFrame({'Utilization': labels, 'Jobs': 0, 'Share': '0.0%', 'GPUs': 0})

      values = df['avg_utilization'].astype(float).clip(edges[0], edges[-1]).to_numpy()
      counts, _ = np.histogram(values, bins=edges)
      gpu_counts, _ = np.histogram(values, bins=edges, weights=df['gpu_count'].astype(float).to_numpy())
      total = counts.sum()

      return pd.DataFrame({
         'Utilization': labels,
         'Jobs': counts.astype(int),
         'Share': [f"{(c / total * 100) if total else 0:.1f}%" for c in counts],
         'GPUs': gpu_counts.astype(int)
      })

   def summary(self, days: int = 7) -> dict:
      """Headline numbers over the stored aggregates"""
      df = self._load_frame(days)
      if df.empty:
         return {'jobs': 0, 'mean_utilization': 0.0, 'median_utilization': 0.0,
                 'underutilized_jobs': 0, 'gpu_hours': 0.0}

      utilization = df['avg_utilization'].astype(float)
      return {
         'jobs': int(len(df)),
         'mean_utilization': float(np.mean(utilization)),
         'median_utilization': float(np.median(utilization)),
         'underutilized_jobs': int((utilization < UNDERUTILIZED_THRESHOLD).sum()),
         'gpu_hours': float((df['gpu_count'].astype(float) * df['hours'].astype(float)).sum())
      }

   def _create_empty_job_dataframe(self) -> pd.DataFrame:
      return pd.DataFrame(columns=['Job ID', 'GPUs', 'Avg Util', 'Min/Max', 'Memory',
                                   'Samples', 'Hours', 'Wasted GPU-h', 'Status', 'Low'])
