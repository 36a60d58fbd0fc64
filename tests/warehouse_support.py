from datetime import datetime


BATCH_TIME = datetime(2024, 6, 15, 2, 0, 0)
ORG_ID = "org-1"
OTHER_ORG_ID = "org-2"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now
