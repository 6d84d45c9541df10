import random
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .config import settings
from .errors import NoQuestionsAvailable
from .models import ExamType, QuestionRef, SelectionMethod
from .questions import QuestionBank


# --- Strategy Pattern: Question Loaders ---
class QuestionLoader(ABC):
    """Supplies the ordered questions of a session."""

    @abstractmethod
    async def load_questions(
        self,
        exam_type: ExamType,
        subject: Optional[str] = None,
        year: Optional[int] = None,
    ) -> List[QuestionRef]:
        """Return a non-empty list or raise NoQuestionsAvailable."""

    @abstractmethod
    async def fetch_questions(self, question_ids: List[str]) -> List[QuestionRef]:
        """Return the questions with the given ids, in the given order."""


class BankQuestionLoader(QuestionLoader):
    def __init__(self, bank: QuestionBank):
        self.bank = bank

    async def fetch_questions(self, question_ids: List[str]) -> List[QuestionRef]:
        return self.bank.get_by_ids(question_ids)

    @staticmethod
    def _require(questions: List[QuestionRef], description: str) -> List[QuestionRef]:
        if not questions:
            raise NoQuestionsAvailable(f"No questions available for {description}")
        return questions


class SubjectQuestionLoader(BankQuestionLoader):
    """Questions of one subject, optionally narrowed to a year."""

    def __init__(self, bank: QuestionBank, limit: int = settings.SUBJECT_QUESTION_LIMIT):
        super().__init__(bank)
        self.limit = limit

    async def load_questions(self, exam_type, subject=None, year=None):
        pool = self.bank.find(exam_type, subject, year)
        selected = random.sample(pool, min(self.limit, len(pool)))
        return self._require(selected, f"{ExamType(exam_type).value}/{subject}/{year}")


class YearQuestionLoader(BankQuestionLoader):
    """A few questions of the given year from every subject of the exam type."""

    def __init__(
        self, bank: QuestionBank, per_subject: int = settings.YEAR_QUESTIONS_PER_SUBJECT
    ):
        super().__init__(bank)
        self.per_subject = per_subject

    async def load_questions(self, exam_type, subject=None, year=None):
        selected: List[QuestionRef] = []
        for item in self.bank.get_subjects(exam_type):
            pool = self.bank.find(exam_type, item["id"], year)
            selected.extend(random.sample(pool, min(self.per_subject, len(pool))))
        return self._require(selected, f"{ExamType(exam_type).value}/{year}")


class LoaderFactory:
    """Factory to select the loader for a selection method."""

    @staticmethod
    def create(method: SelectionMethod, bank: QuestionBank) -> QuestionLoader:
        if method == SelectionMethod.BY_YEAR:
            return YearQuestionLoader(bank)
        return SubjectQuestionLoader(bank)

    @staticmethod
    def for_bank(bank: QuestionBank) -> Dict[SelectionMethod, QuestionLoader]:
        return {method: LoaderFactory.create(method, bank) for method in SelectionMethod}
