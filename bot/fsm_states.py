from aiogram.fsm.state import State, StatesGroup


class RegistrationFSM(StatesGroup):
    COLLECTING_CLAIM = State()
    CAPTURING_DOCUMENT = State()
    EXTRACTING = State()
    REVIEWING_EXTRACTION = State()
    COLLECTING_SUPPLEMENTAL = State()
    SUBMITTED = State()
    DASHBOARD = State()
