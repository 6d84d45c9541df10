import glob
import logging
import os
from typing import Any, Dict, List, Optional

import pandas as pd

from .models import ExamType, QuestionRef

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"id", "exam_type", "subject", "text", "correct"}
OPTION_COLUMNS = {"A": "option_a", "B": "option_b", "C": "option_c", "D": "option_d"}
COLUMNS = [
    "id",
    "exam_type",
    "subject",
    "year",
    "text",
    "option_a",
    "option_b",
    "option_c",
    "option_d",
    "correct",
    "explanation",
]

DUMMY_QUESTIONS = [
    {
        "id": "jamb-math-2021-1",
        "exam_type": "JAMB",
        "subject": "mathematics",
        "year": 2021,
        "text": "Simplify 2/3 + 1/6",
        "option_a": "1/2",
        "option_b": "5/6",
        "option_c": "1",
        "option_d": "3/9",
        "correct": "B",
        "explanation": "2/3 = 4/6, and 4/6 + 1/6 = 5/6.",
    },
    {
        "id": "jamb-math-2021-2",
        "exam_type": "JAMB",
        "subject": "mathematics",
        "year": 2021,
        "text": "Solve for x: 3x - 7 = 11",
        "option_a": "4",
        "option_b": "5",
        "option_c": "6",
        "option_d": "7",
        "correct": "C",
        "explanation": "3x = 18, so x = 6.",
    },
    {
        "id": "jamb-eng-2021-1",
        "exam_type": "JAMB",
        "subject": "english",
        "year": 2021,
        "text": "Choose the word nearest in meaning to 'candid'.",
        "option_a": "frank",
        "option_b": "secretive",
        "option_c": "sweet",
        "option_d": "careful",
        "correct": "A",
        "explanation": "A candid remark is frank and honest.",
    },
    {
        "id": "waec-phy-2020-1",
        "exam_type": "WAEC",
        "subject": "physics",
        "year": 2020,
        "text": "What is the SI unit of force?",
        "option_a": "Joule",
        "option_b": "Watt",
        "option_c": "Newton",
        "option_d": "Pascal",
        "correct": "C",
        "explanation": "Force is measured in newtons (kg m/s^2).",
    },
    {
        "id": "waec-chem-2020-1",
        "exam_type": "WAEC",
        "subject": "chemistry",
        "year": 2020,
        "text": "Which gas turns lime water milky?",
        "option_a": "Oxygen",
        "option_b": "Carbon dioxide",
        "option_c": "Hydrogen",
        "option_d": "Nitrogen",
        "correct": "B",
        "explanation": "CO2 forms insoluble calcium carbonate with lime water.",
    },
]


def _clean(value: Any) -> Optional[Any]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return value


# --- Service Layer: Question Bank ---
class QuestionBank:
    """Loads question CSV files from a directory into one DataFrame."""

    def __init__(self, directory: str):
        self.directory = directory
        self.frame = pd.DataFrame(columns=COLUMNS)
        self.load_all()

    def load_all(self):
        frames = []
        if not os.path.exists(self.directory):
            os.makedirs(self.directory)
            logger.warning(f"Created directory {self.directory}. Please add CSV files.")

        csv_files = glob.glob(os.path.join(self.directory, "*.csv"))
        for file_path in csv_files:
            file_name = os.path.basename(file_path)
            try:
                df = pd.read_csv(file_path, encoding="utf-8", dtype={"id": str})
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load {file_path}: {e}")
                continue
            missing = REQUIRED_COLUMNS - set(df.columns)
            if missing:
                logger.error(f"Skipping {file_name}: Missing columns {sorted(missing)}.")
                continue
            df = df.reindex(columns=COLUMNS)
            df = df[df["exam_type"].isin([e.value for e in ExamType])]
            frames.append(df)
            logger.info(f"Loaded {len(df)} questions from {file_name}")

        if frames:
            self.frame = pd.concat(frames, ignore_index=True)
        else:
            logger.warning("No question CSV files found. Loading dummy data.")
            self.frame = pd.DataFrame(DUMMY_QUESTIONS, columns=COLUMNS)
        self.frame = self.frame.drop_duplicates(subset="id", keep="first")

    def _to_question(self, row: Dict[str, Any]) -> QuestionRef:
        options = {
            key: str(row[column])
            for key, column in OPTION_COLUMNS.items()
            if _clean(row.get(column)) is not None
        }
        year = _clean(row.get("year"))
        return QuestionRef(
            id=str(row["id"]),
            text=str(row["text"]),
            options=options,
            correct=str(row["correct"]).strip().upper(),
            explanation=_clean(row.get("explanation")),
            exam_type=ExamType(row["exam_type"]),
            subject=_clean(row.get("subject")),
            year=int(year) if year is not None else None,
        )

    def find(
        self,
        exam_type: ExamType,
        subject: Optional[str] = None,
        year: Optional[int] = None,
    ) -> List[QuestionRef]:
        df = self.frame[self.frame["exam_type"] == ExamType(exam_type).value]
        if subject:
            df = df[df["subject"] == subject]
        if year is not None:
            df = df[df["year"] == year]
        return [self._to_question(row) for row in df.to_dict("records")]

    def get_by_ids(self, ids: List[str]) -> List[QuestionRef]:
        df = self.frame[self.frame["id"].isin(ids)]
        by_id = {str(row["id"]): self._to_question(row) for row in df.to_dict("records")}
        return [by_id[qid] for qid in ids if qid in by_id]

    def get_subjects(self, exam_type: Optional[ExamType] = None) -> List[Dict[str, Any]]:
        df = self.frame
        if exam_type is not None:
            df = df[df["exam_type"] == ExamType(exam_type).value]
        subjects = []
        for key, count in df.groupby("subject").size().items():
            display_name = str(key).replace("_", " ").title()
            subjects.append({"id": key, "name": display_name, "count": int(count)})
        subjects.sort(key=lambda x: x["name"])
        return subjects
