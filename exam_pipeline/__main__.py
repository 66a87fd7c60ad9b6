import sys

from exam_pipeline.cli import main

sys.exit(main())
