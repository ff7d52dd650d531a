from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup

from eligibility_engine.models import EducationLevel, EmploymentStatus, IdType, Nationality

NATIONALITIES = [item.value for item in Nationality]
ID_TYPES = [item.value for item in IdType]
EDUCATION_LEVELS = [item.value for item in EducationLevel]
EMPLOYMENT_STATUSES = [item.value for item in EmploymentStatus]

CONTINUE_TEXT = "Continue ➡"
BACK_TEXT = "⬅ Back"
ABANDON_TEXT = "🔁 Use another photo"
NEW_REGISTRATION_TEXT = "📝 New registration"

CONFIRM_CALLBACK = "extraction:confirm"
BACK_CALLBACK = "extraction:back"


def claim_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[
            [KeyboardButton(text=n) for n in NATIONALITIES],
            [KeyboardButton(text=t) for t in ID_TYPES],
            [KeyboardButton(text=CONTINUE_TEXT)],
        ],
        resize_keyboard=True,
    )


def capture_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=BACK_TEXT)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def extracting_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=ABANDON_TEXT)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def review_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="Confirm & continue", callback_data=CONFIRM_CALLBACK)],
            [InlineKeyboardButton(text="Back to capture", callback_data=BACK_CALLBACK)],
        ]
    )


def supplemental_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=BACK_TEXT)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )


def submitted_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=NEW_REGISTRATION_TEXT)]],
        resize_keyboard=True,
        one_time_keyboard=True,
    )
