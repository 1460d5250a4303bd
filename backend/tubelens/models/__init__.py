from tubelens.models.run import WorkflowRun, ActiveRun  # noqa: F401
from tubelens.models.analysis import VideoAnalysis  # noqa: F401
from tubelens.models.slides import SlideAnalysis, SlideExtraction, VideoSlide  # noqa: F401
from tubelens.models.transcript import Transcript  # noqa: F401
