import json
from . import story as kstory
from .run import Runtime, StoryStateError


class StoryIO(object):

    EXTENSIONS = ["ink"]

    @staticmethod
    def read(stream):
        return StoryIO.INST._read(stream)

    def _read(self,stream):
        return kstory.read_story(stream.read())

StoryIO.INST = StoryIO()


class StateIO(object):
    """Saves and loads playthrough state as JSON"""

    EXTENSIONS = ["json"]

    @staticmethod
    def write(state,stream):
        StateIO.INST._write(state,stream)

    @staticmethod
    def read(story,stream,**options):
        return StateIO.INST._read(story,stream,options)

    def _write(self,state,stream):
        if isinstance(state,Runtime):
            state = state.get_state()
        stream.write(json.dumps(state,indent=4,sort_keys=True))

    def _read(self,story,stream,options):
        try:
            state = json.loads(stream.read())
        except ValueError as e:
            raise StoryStateError("Saved state is not valid JSON: %s" % e)
        return story.restore(state,**options)

StateIO.INST = StateIO()
