from datetime import datetime

from queuedeck.common.job import Job
from queuedeck.common.states import BaseState


class ElectStateContext:
    def __init__(self, job: Job, candidate_state: BaseState, now: datetime):
        self.job = job
        self.candidate_state = candidate_state
        self.now = now
