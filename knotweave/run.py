"""Playback of a story graph. A Runtime walks the content of the
current knot or stitch through a stack of frames, one per entered
choice, and is driven by the host through advance and select."""

import collections
import logging
import sys
from . import markup as km
from .state import SequenceState
from .story import Choice, TERMINAL, address_key


logger = logging.getLogger(__name__)

AT_LINE = "at_line"
AWAITING_CHOICE = "awaiting_choice"
ENDED = "ended"

STATE_VERSION = 1
DEFAULT_MAX_STEPS = 10000


class StoryRuntimeError(Exception):
    pass


class SelectionError(StoryRuntimeError):
    pass


class StoryStateError(StoryRuntimeError):
    pass


class OutOfChoicesError(StoryRuntimeError):
    pass


class StoryLoopError(StoryRuntimeError):
    pass


class OutputUnit(object):
    """One line of resolved narrative text. Glue at either end means
    no line break separates it from its neighbour."""

    _text = None
    text = property(lambda s: s._text)
    _tags = None
    tags = property(lambda s: s._tags)
    _glue_begin = False
    glue_begin = property(lambda s: s._glue_begin)
    _glue_end = False
    glue_end = property(lambda s: s._glue_end)
    glue = property(lambda s: s._glue_end)

    def __init__(self,text,tags=(),glue_begin=False,glue_end=False):
        self._text = text
        self._tags = tuple(tags)
        self._glue_begin = glue_begin
        self._glue_end = glue_end

    def __eq__(self,other):
        return (isinstance(other,OutputUnit) and self._text == other._text
            and self._tags == other._tags and self._glue_begin == other._glue_begin
            and self._glue_end == other._glue_end)

    def __repr__(self):
        return "OutputUnit(%s,%s,%s,%s)" % (repr(self._text),repr(self._tags),
            repr(self._glue_begin),repr(self._glue_end))


ChoiceOption = collections.namedtuple("ChoiceOption","text tags")


class ChoiceSet(object):
    """The ordered options currently open to the player"""

    _options = None
    options = property(lambda s: list(s._options))

    def __init__(self,options):
        self._options = tuple(ChoiceOption(*o) for o in options)

    def __len__(self):
        return len(self._options)

    def __iter__(self):
        return iter(self._options)

    def __getitem__(self,index):
        return self._options[index]

    def __eq__(self,other):
        return isinstance(other,ChoiceSet) and self._options == other._options

    def __repr__(self):
        return "ChoiceSet(%s)" % repr(list(self._options))


class Ended(object):

    def __eq__(self,other):
        return isinstance(other,Ended)

    def __repr__(self):
        return "Ended()"


class _Frame(object):
    """Position within one block. The root frame holds the knot or stitch
    content; each further frame holds the content of the choice at index
    ``choice`` of the frame below it."""

    def __init__(self,block,cursor=0,choice=None):
        self.block = block
        self.cursor = cursor
        self.choice = choice

    def copy(self):
        return _Frame(self.block,self.cursor,self.choice)


def join_output(units):
    """Joins output units into text, putting a line break between
    neighbours unless glue joins them"""
    out = []
    prev = None
    for u in units:
        if prev is not None and not (prev.glue_end or u.glue_begin):
            out.append("\n")
        out.append(u.text)
        prev = u
    return "".join(out)


class Runtime(object):
    """A single playthrough of a story. The story itself is never
    modified, so any number of runtimes may share one."""

    _story = None
    story = property(lambda s: s._story)
    _state = None
    state = property(lambda s: s._state)
    _knot = None
    knot = property(lambda s: s._knot)
    _stitch = None
    stitch = property(lambda s: s._stitch)
    _variables = None
    variables = property(lambda s: s._variables)
    visits = property(lambda s: dict(s._visits))

    def __init__(self,story,address,overrides=None,max_steps=DEFAULT_MAX_STEPS,seed=0):
        self._setup(story,overrides,max_steps,seed)
        self._frames = []
        self._divert(address)

    def _setup(self,story,overrides,max_steps,seed):
        self._story = story
        self._overrides = story.check_overrides(overrides)
        self._variables = story.variables.with_overrides(self._overrides)
        self._max_steps = max_steps
        self._seed = seed
        self._sequences = SequenceState()
        self._visits = {}
        self._consumed = set()
        self._presented = []
        self._choices = None
        self._state = AT_LINE
        self._knot = None
        self._stitch = None

    @property
    def choices(self):
        """The ChoiceSet awaiting selection, or None"""
        return self._choices

    def visit_count(self,name):
        address = self._story.resolve_address(name,self._knot)
        if address is None:
            raise KeyError(name)
        return self._visits.get(address_key(address),0)

    def advance(self):
        """Walks forward to the next output unit or choice point.
        Returns an OutputUnit, a ChoiceSet or Ended."""
        if self._state == ENDED:
            return Ended()
        if self._state == AWAITING_CHOICE:
            raise StoryStateError("A choice must be selected before advancing")
        snapshot = self._snapshot()
        try:
            return self._advance()
        except Exception:
            self._restore_snapshot(snapshot)
            raise

    def select(self,index):
        """Chooses one of the presented options by its position"""
        if self._state != AWAITING_CHOICE:
            raise StoryStateError("There is no choice to select from")
        if (not isinstance(index,int) or isinstance(index,bool)
                or index < 0 or index >= len(self._presented)):
            raise SelectionError("Choice %s is out of range 0-%d" % (
                repr(index),len(self._presented)-1))
        frame = self._frames[-1]
        position = self._presented[index]
        logger.debug("Selected choice %d: %s",index,self._choices[index].text)
        self._enter_choice(frame,position)
        self._presented = []
        self._choices = None
        self._state = AT_LINE

    def get_state(self):
        """Returns the playthrough state as plain data"""
        return {
            "version": STATE_VERSION,
            "state": self._state,
            "knot": self._knot,
            "stitch": self._stitch,
            "frames": [[f.choice,f.cursor] for f in self._frames],
            "presented": list(self._presented),
            "choices": [[c.text,list(c.tags)] for c in self._choices] if self._choices else [],
            "sequences": self._sequences.to_dict(),
            "visits": dict(self._visits),
            "consumed": sorted(self._consumed),
            "variables": dict(self._overrides),
            "seed": self._seed,
        }

    @staticmethod
    def restore(story,state,max_steps=DEFAULT_MAX_STEPS,seed=None):
        """Rebuilds a runtime from the result of get_state. The shuffle
        seed is taken from the saved state unless one is given."""
        if not isinstance(state,dict) or state.get("version") != STATE_VERSION:
            raise StoryStateError("Unsupported saved state")
        runtime = Runtime.__new__(Runtime)
        try:
            if seed is None:
                seed = state.get("seed",0)
            runtime._setup(story,state.get("variables"),max_steps,seed)
            runtime._load(state)
        except (KeyError,IndexError,TypeError,ValueError) as e:
            raise StoryStateError("Invalid saved state: %s" % e)
        return runtime

    def _load(self,state):
        if state["state"] not in (AT_LINE,AWAITING_CHOICE,ENDED):
            raise ValueError("unknown state %s" % repr(state["state"]))
        self._knot = state["knot"]
        self._stitch = state["stitch"]
        block = self._story.content(self._knot,self._stitch)
        self._frames = []
        for i,(choice,cursor) in enumerate(state["frames"]):
            if i > 0:
                node = block[choice]
                if not isinstance(node,Choice):
                    raise ValueError("frame %d does not enter a choice" % i)
                block = node.content
            if cursor < 0 or cursor > len(block):
                raise ValueError("cursor %d outside block" % cursor)
            self._frames.append(_Frame(block,cursor,choice))
        if len(self._frames)==0:
            raise ValueError("no frames")
        self._state = state["state"]
        self._presented = list(state["presented"])
        top = self._frames[-1].block
        for p in self._presented:
            if not isinstance(top[p],Choice):
                raise ValueError("presented option %d is not a choice" % p)
        if self._state == AWAITING_CHOICE:
            self._choices = ChoiceSet((text,tuple(tags)) for text,tags in state["choices"])
            if len(self._choices) != len(self._presented):
                raise ValueError("presented choices do not match")
        self._sequences = SequenceState(state["sequences"])
        self._visits = dict(state["visits"])
        self._consumed = set(state["consumed"])

    def _snapshot(self):
        return (self._knot,self._stitch,[f.copy() for f in self._frames],
            dict(self._visits),set(self._consumed),self._sequences.to_dict(),
            self._state,list(self._presented),self._choices)

    def _restore_snapshot(self,snapshot):
        (self._knot,self._stitch,self._frames,self._visits,self._consumed,
            sequences,self._state,self._presented,self._choices) = snapshot
        self._sequences = SequenceState(sequences)

    def _lookup(self,name):
        if name in self._variables:
            return self._variables[name]
        address = self._story.resolve_address(name,self._knot)
        if address is None:
            raise km.EvaluationError("Unknown variable or address '%s'" % name)
        return self._visits.get(address_key(address),0)

    def _resolver(self):
        return km.Resolver(self._lookup,self._sequences,self._seed)

    def _advance(self):
        steps = 0
        while True:
            steps += 1
            if steps > self._max_steps:
                raise StoryLoopError("No output after %d steps in '%s'" % (
                    self._max_steps,address_key((self._knot,self._stitch))))
            frame = self._frames[-1]
            if frame.cursor >= len(frame.block):
                if len(self._frames)==1:
                    logger.debug("Ran out of content in '%s'",
                        address_key((self._knot,self._stitch)))
                    self._state = ENDED
                    return Ended()
                self._frames.pop()
                continue
            node = frame.block[frame.cursor]
            result = getattr(self,"_step_%s" % type(node).__name__)(node,frame)
            if result is not None:
                return result
            if self._state == ENDED:
                return Ended()

    def _step_TextLine(self,node,frame):
        frame.cursor += 1
        resolver = self._resolver()
        text,divert = resolver.resolve(node.content)
        resolver.commit()
        text = km.normalise(text,node.glue_begin,node.glue_end)
        unit = None
        if text.strip() or node.tags:
            unit = OutputUnit(text,node.tags,node.glue_begin,node.glue_end)
        if divert is not None:
            self._follow(divert,node.lineno)
        return unit

    def _step_Gather(self,node,frame):
        frame.cursor += 1

    def _step_Divert(self,node,frame):
        frame.cursor += 1
        if node.condition is not None and not self._resolver().test(node.condition):
            return None
        self._follow(node.target,node.lineno)

    def _step_Choice(self,node,frame):
        start = end = frame.cursor
        while end < len(frame.block) and isinstance(frame.block[end],Choice):
            end += 1
        resolver = self._resolver()
        visible = [i for i in range(start,end) if self._is_visible(frame.block[i],resolver)]
        normal = [i for i in visible if not frame.block[i].fallback]
        if normal:
            options = []
            for i in normal:
                choice = frame.block[i]
                text,divert = resolver.resolve(choice.selection)
                options.append(ChoiceOption(km.normalise(text),choice.tags))
            resolver.commit()
            frame.cursor = end
            self._presented = normal
            self._choices = ChoiceSet(options)
            self._state = AWAITING_CHOICE
            logger.debug("Presenting %d choices from line %d",len(options),node.lineno)
            return self._choices
        if visible:
            frame.cursor = end
            logger.debug("Taking fallback choice on line %d",frame.block[visible[0]].lineno)
            self._enter_choice(frame,visible[0])
            return None
        raise OutOfChoicesError("No choices are available at line %d" % node.lineno)

    def _is_visible(self,choice,resolver):
        if not choice.sticky and choice.ident in self._consumed:
            return False
        return all(resolver.test(c) for c in choice.conditions)

    def _enter_choice(self,frame,position):
        choice = frame.block[position]
        if not choice.sticky:
            self._consumed.add(choice.ident)
        self._frames.append(_Frame(choice.content,0,position))

    def _follow(self,target,lineno):
        address = self._story.resolve_target(target,self._knot)
        if address is None:
            raise StoryRuntimeError("Line %d: divert to unknown target '%s'" % (lineno,target))
        self._divert(address)

    def _divert(self,address):
        if address == TERMINAL:
            logger.debug("Diverted to the end of the story")
            self._state = ENDED
            return
        knot,stitch = address
        if knot != self._knot or stitch is None:
            self._visits[knot] = self._visits.get(knot,0)+1
        if stitch is not None:
            key = address_key(address)
            self._visits[key] = self._visits.get(key,0)+1
        logger.debug("Diverted to '%s'",address_key(address))
        self._knot = knot
        self._stitch = stitch
        self._frames = [_Frame(self._story.content(knot,stitch))]


class RunnerError(Exception):
    pass


class CommandLineRunner(object):
    """Plays a runtime on the console, printing text as it arrives
    and reading numbered choices from the input stream"""

    _line_open = False
    _glued = False

    @staticmethod
    def run(runtime):
        CommandLineRunner.INST._run(runtime,sys.stdin,sys.stdout)

    def _run(self,runtime,ins,outs):
        self._line_open = False
        self._glued = False
        while True:
            if runtime.state == AWAITING_CHOICE:
                result = runtime.choices
            else:
                result = runtime.advance()
            hname = "_run_%s" % type(result).__name__
            if not getattr(self,hname)(result,runtime,ins,outs):
                break

    def _end_line(self,outs):
        if self._line_open:
            outs.write("\n")
        self._line_open = False
        self._glued = False

    def _run_OutputUnit(self,unit,runtime,ins,outs):
        if self._line_open and not (self._glued or unit.glue_begin):
            outs.write("\n")
        outs.write(unit.text)
        self._line_open = True
        self._glued = unit.glue_end
        return True

    def _run_ChoiceSet(self,choices,runtime,ins,outs):
        self._end_line(outs)
        outs.write("\n")
        for i,c in enumerate(choices):
            outs.write("%d) %s\n" % (i+1,c.text))
        outs.write("\n")

        while True:
            outs.write("> ")
            outs.flush()
            selstring = ins.readline()
            if selstring == "":
                raise RunnerError("Input ended while waiting for a choice")
            outs.write("\n")
            try:
                selnum = int(selstring)
            except ValueError:
                outs.write("Enter a number\n\n")
                continue

            if selnum < 1 or selnum > len(choices):
                outs.write("Invalid choice\n\n")
                continue

            break

        runtime.select(selnum-1)
        return True

    def _run_Ended(self,ended,runtime,ins,outs):
        self._end_line(outs)
        return False


CommandLineRunner.INST = CommandLineRunner()
