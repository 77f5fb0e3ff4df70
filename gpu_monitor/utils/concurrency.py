"""
Concurrent execution of independent external calls
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Hashable, Tuple, Type, TypeVar, Any

K = TypeVar('K', bound=Hashable)


def run_concurrently(
   calls: Dict[K, Callable[[], Any]],
   max_workers: int = 8,
   expected_errors: Tuple[Type[BaseException], ...] = (Exception,)
) -> Tuple[Dict[K, Any], Dict[K, BaseException]]:
   """
   Run independent calls on a thread pool and join them

   Args:
      calls: Key to zero-argument callable
      max_workers: Upper bound on worker threads
      expected_errors: Exception types collected per key; anything else propagates

   Returns:
      (results, errors) keyed like `calls`
   """
   results: Dict[K, Any] = {}
   errors: Dict[K, BaseException] = {}

   if not calls:
      return results, errors

   # Single call - no thread overhead
   if len(calls) == 1:
      key, call = next(iter(calls.items()))
      try:
         results[key] = call()
      except expected_errors as e:
         errors[key] = e
      return results, errors

   workers = max(1, min(len(calls), max_workers))
   with ThreadPoolExecutor(max_workers=workers) as executor:
      futures = {executor.submit(call): key for key, call in calls.items()}
      for future in as_completed(futures):
         key = futures[future]
         try:
            results[key] = future.result()
         except expected_errors as e:
            errors[key] = e

   return results, errors
