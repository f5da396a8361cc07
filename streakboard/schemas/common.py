from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator

from streakboard.clock import ensure_utc

UTCDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
