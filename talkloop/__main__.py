import sys

from talkloop.voice_loop import main

sys.exit(main())
