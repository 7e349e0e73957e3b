#!/usr/bin/env python3

import begin
import argparse
import logging
import sys
import re
from . import io as kio
from . import lex as klex
from . import story as kstory
from . import run as krun


logger = logging.getLogger(__name__)


class NoDefaultHelpFormatter(argparse.HelpFormatter):

    def _get_help_string(self, action):
        return re.sub(r'\(default:.*\)', '', action.help)


def _variable_value(text):
    text = text.strip()
    if text in ("true","false"):
        return text == "true"
    for kind in (int,float):
        try:
            return kind(text)
        except ValueError:
            pass
    if len(text)>1 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def _variables(v):
    """Parses name=value pairs separated by commas"""
    if v is None or isinstance(v,dict):
        return v
    values = {}
    for pair in v.split(","):
        if not pair.strip():
            continue
        if "=" not in pair:
            raise ValueError("Expected name=value, got '%s'" % pair)
        name,value = pair.split("=",1)
        values[name.strip()] = _variable_value(value)
    return values


def _save(runtime, filename):
    if filename is None: return
    with open(filename, "w", encoding='utf-8') as outstream:
        kio.StateIO.write(runtime.get_state(), outstream)
    logger.info("Saved state to %s", filename)


@begin.start(
    formatter_class=NoDefaultHelpFormatter,
    env_prefix="KNOTWEAVE_",
    config_file=".knotweave.cfg",
)
@begin.logging
@begin.convert(
    variables=_variables,
)
def main(
        story: "Story file to play or '-' (standard input)",
        start: "Knot, or knot.stitch, to begin playing at" =None,
        load: "Resume from a state file saved earlier" =None,
        save: "File to save state to when play stops" =None,
        variables: "Variable overrides as name=value pairs separated by commas" =None,
        seed: "Seed for shuffled alternatives" =None,
    ):
    """Plays branching narrative stories on the command line"""

    if story not in (None, "-"):
        instream = open(story, "r", encoding='utf-8')
    else:
        instream = sys.stdin

    try:
        graph = kio.StoryIO.read(instream)
    except (klex.ParseError, kstory.ResolutionError) as e:
        sys.exit(str(e))
    finally:
        if instream is not sys.stdin:
            instream.close()

    try:
        if load is not None:
            with open(load, "r", encoding='utf-8') as statestream:
                runtime = kio.StateIO.read(graph, statestream)
        else:
            runtime = graph.start(start, _variables(variables),
                seed=int(seed) if seed is not None else 0)
    except (kstory.ResolutionError, krun.StoryRuntimeError, ValueError) as e:
        sys.exit(str(e))

    try:
        krun.CommandLineRunner.run(runtime)
    except (krun.RunnerError, krun.StoryRuntimeError) as e:
        _save(runtime, save)
        sys.exit(str(e))

    _save(runtime, save)
