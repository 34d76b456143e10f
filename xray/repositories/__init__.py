from xray.repositories.candidates import InMemoryCandidatesRepository, PostgresCandidatesRepository
from xray.repositories.runs import InMemoryRunsRepository, PostgresRunsRepository
from xray.repositories.steps import InMemoryStepsRepository, PostgresStepsRepository

__all__ = [
    "InMemoryCandidatesRepository",
    "PostgresCandidatesRepository",
    "InMemoryRunsRepository",
    "PostgresRunsRepository",
    "InMemoryStepsRepository",
    "PostgresStepsRepository",
]
