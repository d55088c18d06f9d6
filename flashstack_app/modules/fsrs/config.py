# modules/fsrs/config.py

# FSRS-5 weights fitted on the open spaced-repetition dataset.
DEFAULT_PARAMETERS = [
    0.4072, 1.1829, 3.1262, 15.4722,          # w0-w3: initial stability per rating
    7.2102, 0.5316, 1.0651, 0.0234,           # w4-w7: difficulty
    1.6160, 0.1544, 1.0070,                   # w8-w10: stability after recall
    1.9395, 0.1100, 0.2939, 2.2697,           # w11-w14: stability after lapse
    0.2315, 2.9898,                           # w15 hard penalty, w16 easy bonus
    0.5100, 0.6000,                           # w17-w18: short-term stability
]

WEIGHT_COUNT = 19

DECAY = -0.5
FACTOR = 19.0 / 81.0

# Lower/upper bounds applied to each weight while optimizing.
WEIGHT_BOUNDS = [
    (0.001, 100.0), (0.001, 100.0), (0.001, 100.0), (0.001, 100.0),
    (1.0, 10.0), (0.001, 4.0), (0.001, 4.0), (0.001, 0.75),
    (0.0, 4.5), (0.0, 0.8), (0.001, 3.5),
    (0.001, 5.0), (0.001, 0.25), (0.001, 0.9), (0.0, 4.0),
    (0.0, 1.0), (1.0, 6.0),
    (0.0, 2.0), (0.0, 2.0),
]


class FSRSDefaultConfig:
    FSRS_DESIRED_RETENTION = 0.90
    FSRS_MAX_INTERVAL = 36500
    FSRS_ENABLE_FUZZ = True
    FSRS_FUZZ_FACTOR = 0.05
    FSRS_ENABLE_SHORT_TERM = False
    FSRS_LEARNING_STEPS = [1, 10]
    FSRS_RELEARNING_STEPS = [10]
    FSRS_GRADUATING_INTERVAL = 1
    FSRS_EASY_INTERVAL = 4
    FSRS_GLOBAL_WEIGHTS = list(DEFAULT_PARAMETERS)

    FSRS_MAX_DUE = 200
    FSRS_MAX_NEW = 20

    FSRS_OPTIMIZER_MIN_SAMPLES = 100
    FSRS_OPTIMIZER_MAX_ITERATIONS = 500
    FSRS_OPTIMIZER_CONVERGENCE = 1e-6
    FSRS_OPTIMIZER_TIMEOUT = 300
    FSRS_OPTIMIZER_AUTO_APPLY = True
    FSRS_OPTIMIZER_SCHEDULE_ENABLED = False
    FSRS_OPTIMIZER_REFRESH_HOURS = 24
    FSRS_OPTIMIZER_WORKERS = 2
