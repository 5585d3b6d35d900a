"""Lock-based transactional memory, bank-workload grading and synchronization examples."""

__version__ = "0.1.0"