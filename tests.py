#!/usr/bin/env python3

import io
import json
import logging
from unittest import mock
import unittest
import knotweave.grammar as kgr
import knotweave.lex as klex
import knotweave.markup as km
import knotweave.state as kst
import knotweave.story as kstory
import knotweave.run as krun
import knotweave.io as kio


def play(runtime,picks=()):
    """Advances until the story ends or a choice is reached with no
    picks left. Returns unit texts and option lists in order."""
    picks = list(picks)
    out = []
    while True:
        r = runtime.advance()
        if isinstance(r,krun.Ended):
            return out
        if isinstance(r,krun.ChoiceSet):
            out.append([o.text for o in r])
            if len(picks)==0:
                return out
            runtime.select(picks.pop(0))
        else:
            out.append(r.text)


def parse_content(text,lineno=1):
    return km.Content().parse(kgr.Input(text,0,lineno))


def parse_expression(text):
    return km.Expression.parse(kgr.Input(text))


GATHER_STORY = """
Start.
* A
  a text
  ** A1
     a1
     *** A1x
         deep
     *** A1y
     --- after x or y
  ** A2
  -- after A1 or A2
* B
- gathered
-> END
"""

LOOP_STORY = """
VAR name = "friend"
=== loop ===
Hi {name}. {&one|two|three}
+ [Again] -> loop
* [Leave] -> END
"""

HUB_STORY = """
=== hub ===
{hub > 1: Back again.|First time.}
* [Left] -> hub
+ [Right] -> hub
* -> END
"""

SHOP_STORY = """
VAR gold = 0
=== shop ===
* {gold > 0} [Buy] -> END
* -> leave
=== leave ===
You leave.
-> END
"""

HOUSE_STORY = """
=== house ===
= kitchen
In the kitchen.
-> garden
= garden
In the garden.
-> END
"""


class TestInput(unittest.TestCase):

    def test_can_iterate(self):
        i = kgr.Input("abc")
        self.assertEqual("a",i.next())
        self.assertEqual("b",i.next())
        self.assertEqual("c",i.next())
        self.assertEqual(kgr.END,i.next())

    def test_does_not_advance_past_end(self):
        i = kgr.Input("a")
        i.next()
        i.next()
        i.next()
        self.assertEqual(1,i.pos)
        self.assertTrue(i.at_end())

    def test_can_branch(self):
        i = kgr.Input("abcdef")
        i.next()
        j = i.branch()
        self.assertEqual("b",j.next())
        self.assertEqual("b",i.next())

    def test_can_commit(self):
        i = kgr.Input("abcdef")
        j = i.branch()
        j.next()
        j.next()
        j.commit()
        self.assertEqual("c",i.next())

    def test_branch_keeps_line_and_offset(self):
        i = kgr.Input("abc",4,7)
        i.next()
        j = i.branch()
        self.assertEqual(7,j.lineno)
        self.assertEqual(5,j.column)

    def test_get_deepest_pos(self):
        i = kgr.Input("abcdef")
        j = i.branch()
        j.next()
        k = j.branch()
        k.next()
        k.next()
        self.assertEqual(3,i.get_deepest_pos())


class TestCombinators(unittest.TestCase):

    def test_keyword_requires_word_boundary(self):
        self.assertIsNone(kgr.Keyword("VAR").parse(kgr.Input("VARIABLE")))
        self.assertEqual("VAR",kgr.Keyword("VAR").parse(kgr.Input("VAR x")))

    def test_optional_returns_false_on_failure(self):
        self.assertIs(False,kgr.Optional(kgr.Char("x")).parse(kgr.Input("y")))

    def test_sequence_doesnt_consume_on_failure(self):
        i = kgr.Input("ab")
        self.assertIsNone(kgr.Sequence(kgr.Char("a"),kgr.Char("c")).parse(i))
        self.assertEqual(0,i.pos)

    def test_name_parses_identifier(self):
        n = kgr.Name.parse(kgr.Input("door_2 rest"))
        self.assertEqual("door_2",n.text)

    def test_char_rejects_end_marker(self):
        self.assertIsNone(kgr.Char(kgr.END).parse(kgr.Input("")))


class TestExpressions(unittest.TestCase):

    def evaluate(self,text,**names):
        return km.Evaluator(lambda n: names[n]).evaluate(parse_expression(text))

    def test_parses_precedence(self):
        self.assertEqual(km.BinaryOp("+",km.Value(1),
                km.BinaryOp("*",km.Value(2),km.Value(3))),
            parse_expression("1 + 2 * 3"))

    def test_evaluates_arithmetic(self):
        self.assertEqual(7,self.evaluate("1 + 2 * 3"))
        self.assertEqual(9,self.evaluate("(1 + 2) * 3"))

    def test_integer_division_truncates(self):
        self.assertEqual(3,self.evaluate("7 / 2"))

    def test_float_literal(self):
        self.assertEqual(1.5,self.evaluate("1.5"))

    def test_string_concatenation(self):
        self.assertEqual("gold: 5",self.evaluate('"gold: " + g',g=5))

    def test_comparison_and_logic(self):
        self.assertIs(True,self.evaluate("x > 1 and not y",x=2,y=False))
        self.assertIs(True,self.evaluate("x == 1 || y",x=0,y=True))
        self.assertIs(False,self.evaluate("!x",x=True))

    def test_negation(self):
        self.assertEqual(-3,self.evaluate("-x",x=3))

    def test_names_may_be_qualified(self):
        self.assertEqual(km.NameRef("house.kitchen"),parse_expression("house.kitchen"))

    def test_reserved_words_are_not_names(self):
        self.assertEqual(km.Value(True),parse_expression("true"))

    def test_type_error_becomes_evaluation_error(self):
        with self.assertRaises(km.EvaluationError):
            self.evaluate('"a" - 1')

    def test_division_by_zero_becomes_evaluation_error(self):
        with self.assertRaises(km.EvaluationError):
            self.evaluate("1 / 0")

    def test_iter_names(self):
        self.assertEqual(["a","b"],list(km.iter_names(parse_expression("a + b * 2"))))


class TestContent(unittest.TestCase):

    def test_plain_text(self):
        self.assertEqual((km.Text("Hello world"),),parse_content("Hello world"))

    def test_glue(self):
        self.assertEqual((km.Text("Hello "),km.Glue()),parse_content("Hello <>"))

    def test_hyphens_and_angles_are_text(self):
        self.assertEqual((km.Text("well-known a < b"),),parse_content("well-known a < b"))

    def test_escape(self):
        self.assertEqual((km.Text("a {b}"),),parse_content("a \\{b\\}"))

    def test_divert(self):
        self.assertEqual((km.Text("Go "),km.InlineDivert("forest.path")),
            parse_content("Go -> forest.path"))

    def test_interpolation(self):
        self.assertEqual((km.Interpolation(km.NameRef("x")),),parse_content("{x}"))

    def test_conditional(self):
        self.assertEqual((km.Conditional(km.NameRef("x"),(km.Text(" yes"),),
                (km.Text("no"),)),),
            parse_content("{x: yes|no}"))

    def test_alternative_modes(self):
        for prefix,mode in [("",km.SEQUENCE),("&",km.CYCLE),("!",km.ONCE),
                ("~",km.SHUFFLE)]:
            span = parse_content("{%sa|b}" % prefix)[0]
            self.assertEqual(mode,span.mode)
            self.assertEqual(((km.Text("a"),),(km.Text("b"),)),span.branches)

    def test_alternative_identity_is_line_and_column(self):
        span = parse_content("ab {a|b}",12)[1]
        self.assertEqual("12:3",span.ident)

    def test_split_glue(self):
        self.assertEqual((True,False),km.split_glue(parse_content("<> world")))
        self.assertEqual((False,True),km.split_glue(parse_content("hello <>  ")))

    def test_normalise(self):
        self.assertEqual("a b",km.normalise("  a \t b  "))
        self.assertEqual("a b ",km.normalise("  a  b  ",glue_end=True))


class TestAlternatives(unittest.TestCase):

    def series(self,mode,size,visits):
        return [km.pick_alternative(mode,n,size,"1:0") for n in range(visits)]

    def test_sequence_sticks_on_last(self):
        self.assertEqual([0,1,1,1],self.series(km.SEQUENCE,2,4))

    def test_cycle_wraps(self):
        self.assertEqual([0,1,0,1],self.series(km.CYCLE,2,4))

    def test_once_exhausts(self):
        self.assertEqual([0,1,None,None],self.series(km.ONCE,2,4))

    def test_shuffle_shows_each_branch_once_per_pass(self):
        picks = self.series(km.SHUFFLE,3,6)
        self.assertEqual([0,1,2],sorted(picks[:3]))
        self.assertEqual([0,1,2],sorted(picks[3:]))

    def test_shuffle_is_deterministic_for_seed(self):
        a = [km.pick_alternative(km.SHUFFLE,n,5,"3:1",seed=9) for n in range(10)]
        b = [km.pick_alternative(km.SHUFFLE,n,5,"3:1",seed=9) for n in range(10)]
        self.assertEqual(a,b)


class TestResolver(unittest.TestCase):

    def test_resolves_interpolation_and_booleans(self):
        r = km.Resolver({"n": 3, "b": True}.__getitem__,kst.SequenceState())
        self.assertEqual(("3 true",None),r.resolve(parse_content("{n} {b}")))

    def test_stops_at_divert(self):
        r = km.Resolver(lambda n: True,kst.SequenceState())
        self.assertEqual(("go  ","k"),r.resolve(parse_content("go {x: -> k} rest")))

    def test_visits_are_staged_until_commit(self):
        seqs = kst.SequenceState()
        r = km.Resolver(lambda n: None,seqs)
        self.assertEqual(("a",None),r.resolve(parse_content("{a|b}")))
        self.assertEqual(0,seqs.count("1:0"))
        r.commit()
        self.assertEqual(1,seqs.count("1:0"))

    def test_once_only_still_counts_when_exhausted(self):
        seqs = kst.SequenceState({"1:0": 2})
        r = km.Resolver(lambda n: None,seqs)
        self.assertEqual(("",None),r.resolve(parse_content("{!a|b}")))
        r.commit()
        self.assertEqual(3,seqs.count("1:0"))


class TestState(unittest.TestCase):

    def test_variable_store_rejects_unsupported_values(self):
        with self.assertRaises(ValueError):
            kst.VariableStore({"x": [1]})

    def test_overrides_require_declaration(self):
        store = kst.VariableStore({"x": 1})
        self.assertEqual(2,store.with_overrides({"x": 2})["x"])
        self.assertEqual(1,store["x"])
        with self.assertRaises(KeyError):
            store.with_overrides({"y": 2})

    def test_sequence_counts_cannot_decrease(self):
        seqs = kst.SequenceState()
        with self.assertRaises(ValueError):
            seqs.commit({"1:0": -1})

    def test_sequence_state_rejects_invalid_counts(self):
        with self.assertRaises(ValueError):
            kst.SequenceState({"1:0": "two"})

    def test_staged_visit_returns_count_before(self):
        staged = kst.SequenceState({"a": 4}).stage()
        self.assertEqual(4,staged.visit("a"))
        self.assertEqual(5,staged.visit("a"))
        self.assertEqual({"a": 2},staged.pending)


class TestStripComments(unittest.TestCase):

    def test_strips_comments_keeping_line_numbers(self):
        self.assertEqual(["a ",""," e",""],
            klex.strip_comments("a // b\n/* c\nd */ e\nTODO: fix"))


class TestClassify(unittest.TestCase):

    def test_blank_line(self):
        self.assertIsNone(klex.classify("   ",1))

    def test_knot_header(self):
        self.assertEqual(klex.KnotHeader("forest",3),klex.classify("=== forest ===",3))
        self.assertEqual(klex.KnotHeader("forest",3),klex.classify("== forest",3))

    def test_stitch_header(self):
        self.assertEqual(klex.StitchHeader("clearing",4),klex.classify("= clearing",4))

    def test_choice_display_has_its_own_spans(self):
        line = klex.classify("+ {&x|y} [go]",2)
        shown = line.selection[0]
        self.assertIsInstance(shown,km.AlternativeSpan)
        self.assertEqual(shown.branches,line.display[0].branches)
        self.assertNotEqual(shown.ident,line.display[0].ident)

    def test_variable_declaration(self):
        self.assertEqual(klex.VarDeclaration("x",km.Value(3),1),
            klex.classify("VAR x = 3",1))

    def test_choice(self):
        c = klex.classify("** Hello [there] friend #wave",2)
        self.assertEqual(2,c.depth)
        self.assertFalse(c.sticky)
        self.assertFalse(c.fallback)
        self.assertEqual((km.Text("Hello there"),),c.selection)
        self.assertEqual((km.Text("Hello  friend "),),c.display)
        self.assertEqual(("wave",),c.tags)
        self.assertIsNone(c.divert)

    def test_sticky_choice_with_condition_and_divert(self):
        c = klex.classify("+ {door} [Open] -> hall",1)
        self.assertTrue(c.sticky)
        self.assertEqual((km.NameRef("door"),),c.conditions)
        self.assertEqual("hall",c.divert)

    def test_markers_may_be_spaced(self):
        self.assertEqual(3,klex.classify("* * * deep",1).depth)

    def test_fallback_choice(self):
        c = klex.classify("* -> END",1)
        self.assertTrue(c.fallback)
        self.assertEqual("END",c.divert)

    def test_mixed_markers_are_an_error(self):
        with self.assertRaises(klex.ParseError):
            klex.classify("*+ x",1)

    def test_gather(self):
        g = klex.classify("- - text",5)
        self.assertEqual(2,g.depth)
        self.assertEqual(klex.PlainLine((km.Text("text"),),(),5),g.rest)

    def test_bare_gather(self):
        self.assertEqual(klex.GatherLine(1,None,1),klex.classify(" -",1))

    def test_divert_line(self):
        self.assertEqual(klex.DivertLine((),"knot",None,(),1),klex.classify("-> knot",1))
        self.assertEqual(klex.DivertLine((km.Text("Go on "),),"knot",None,(),1),
            klex.classify("Go on -> knot",1))

    def test_conditional_divert_line(self):
        self.assertEqual(klex.DivertLine((),"knot",km.NameRef("x"),(),1),
            klex.classify("{x: -> knot}",1))

    def test_text_after_divert_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            klex.classify("Go -> a then",1)

    def test_tag_line(self):
        self.assertEqual(klex.TagLine(("author: me",),1),klex.classify("# author: me",1))

    def test_text_with_tags(self):
        self.assertEqual(klex.PlainLine((km.Text("Hello "),),("one","two"),1),
            klex.classify("Hello #one #two",1))

    def test_unbalanced_brace_is_an_error(self):
        with self.assertRaises(klex.ParseError) as cm:
            klex.classify("Hello {oops",9)
        self.assertEqual(9,cm.exception.lineno)


class TestStoryBuilder(unittest.TestCase):

    def test_nests_choices_and_gathers(self):
        story = kstory.read_story(GATHER_STORY)
        root = story.knot(kstory.ROOT_KNOT).content
        self.assertEqual(["TextLine","Choice","Choice","Gather","TextLine","Divert"],
            [type(n).__name__ for n in root])
        a = root[1].content
        self.assertEqual(["TextLine","TextLine","Choice","Choice","Gather","TextLine"],
            [type(n).__name__ for n in a])
        a1 = a[2].content
        self.assertEqual(["TextLine","TextLine","Choice","Choice","Gather","TextLine"],
            [type(n).__name__ for n in a1])
        self.assertEqual(3,a1[4].depth)

    def test_parsing_is_deterministic(self):
        self.assertEqual(repr(kstory.read_story(GATHER_STORY)),
            repr(kstory.read_story(GATHER_STORY)))

    def test_choice_identity_is_line_number(self):
        story = kstory.read_story(GATHER_STORY)
        self.assertEqual("3",story.knot(kstory.ROOT_KNOT).content[1].ident)

    def test_depth_jump_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("Hello\n** Too deep\n")

    def test_gather_without_choice_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("Hello\n-- nothing to gather\n")

    def test_duplicate_knot_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("== a\nx\n== a\ny\n")

    def test_duplicate_stitch_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("== a\n= s\nx\n= s\ny\n")

    def test_stitch_outside_knot_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("= s\nx\n")

    def test_duplicate_variable_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("VAR x = 1\nVAR x = 2\nHello\n")

    def test_variables_must_be_constant(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("VAR x = 1\nVAR y = x\nHello\n")

    def test_empty_story_is_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("VAR x = 1\n")

    def test_dangling_tags_are_an_error(self):
        with self.assertRaises(klex.ParseError):
            kstory.read_story("Hello\n# orphan\n")

    def test_tags_before_line_attach_to_it(self):
        story = kstory.read_story("Hello\n# loud\nWorld\n")
        self.assertEqual(("loud",),story.knot(kstory.ROOT_KNOT).content[1].tags)

    def test_story_and_knot_tags(self):
        story = kstory.read_story("# title: Test\nHello\n=== k ===\n# mood: dark\nText\n")
        self.assertEqual(("title: Test",),story.tags)
        self.assertEqual(("mood: dark",),story.knot("k").tags)

    def test_declares_variables(self):
        story = kstory.read_story(LOOP_STORY)
        self.assertEqual("friend",story.variables["name"])

    def test_unknown_targets_and_names_are_reported_together(self):
        with self.assertRaises(kstory.ResolutionError) as cm:
            kstory.read_story("-> nowhere\n{missing}\n== k\n* [x] -> elsewhere\n")
        self.assertEqual(3,len(cm.exception.errors))
        self.assertIn("Line 1",cm.exception.errors[0])

    def test_forward_references_are_allowed(self):
        story = kstory.read_story("-> later\n== later\nHi\n")
        self.assertEqual(["later"],story.knot_names)

    def test_resolve_target(self):
        story = kstory.read_story(HOUSE_STORY)
        self.assertEqual(kstory.TERMINAL,story.resolve_target("DONE"))
        self.assertEqual(("house","kitchen"),story.resolve_target("house"))
        self.assertEqual(("house","garden"),story.resolve_target("garden","house"))
        self.assertEqual(("house","garden"),story.resolve_target("house.garden"))
        self.assertIsNone(story.resolve_target("garden"))

    def test_logs_summary(self):
        with self.assertLogs("knotweave.story",level=logging.INFO) as cm:
            kstory.read_story(LOOP_STORY)
        self.assertIn("1 knots and 1 variables",cm.output[0])


class TestRuntime(unittest.TestCase):

    def test_plays_nested_choices_through_gathers(self):
        story = kstory.read_story(GATHER_STORY)
        self.assertEqual(["Start.",["A","B"],"A","a text",["A1","A2"],"A1","a1",
                ["A1x","A1y"],"A1y","after x or y","after A1 or A2","gathered"],
            play(story.start(),[0,0,1]))
        self.assertEqual(["Start.",["A","B"],"B","gathered"],play(story.start(),[1]))

    def test_cycle_and_variables(self):
        story = kstory.read_story(LOOP_STORY)
        self.assertEqual(["Hi friend. one",["Again","Leave"],"Hi friend. two",
                ["Again","Leave"],"Hi friend. three",["Again","Leave"],"Hi friend. one",
                ["Again","Leave"]],
            play(story.start(),[0,0,0,1]))

    def test_sequence_and_once_only(self):
        story = kstory.read_story(
            "=== k ===\nS {a|b} O {!x|y}.\n+ [More] -> k\n")
        out = play(story.start(),[0,0])
        self.assertEqual(["S a O x.","S b O y.","S b O ."],
            [o for o in out if isinstance(o,str)])

    def test_shuffle_is_repeatable_with_seed(self):
        story = kstory.read_story("=== k ===\n{~a|b|c}\n+ [More] -> k\n")
        first = play(story.start(seed=3),[0,0,0,0,0])
        second = play(story.start(seed=3),[0,0,0,0,0])
        self.assertEqual(first,second)
        texts = [o for o in first if isinstance(o,str)]
        self.assertEqual(["a","b","c"],sorted(texts[:3]))

    def test_chosen_text_matches_the_listed_option(self):
        story = kstory.read_story("=== k ===\n+ {&x|y} [go] -> k\n")
        self.assertEqual([["x go"],"x",["y go"]],play(story.start(),[0]))

    def test_chosen_text_matches_shuffled_option(self):
        story = kstory.read_story("=== k ===\n+ {~a|b|c} [go] -> k\n")
        for seed in range(5):
            out = play(story.start(seed=seed),[0])
            self.assertEqual(out[0][0],out[1]+" go")

    def test_non_sticky_choices_are_consumed(self):
        story = kstory.read_story(HUB_STORY)
        self.assertEqual(["First time.",["Left","Right"],"Back again.",["Right"],
                "Back again.",["Right"]],
            play(story.start(),[0,0]))

    def test_fallback_is_taken_when_nothing_else_is_visible(self):
        story = kstory.read_story(
            "=== hub ===\n* [Left] -> hub\n* [Right] -> hub\n* -> done\n"
            "=== done ===\nFinished.\n")
        self.assertEqual([["Left","Right"],["Right"],"Finished."],
            play(story.start(),[0,0]))

    def test_fallback_with_conditions(self):
        story = kstory.read_story(SHOP_STORY)
        self.assertEqual(["You leave."],play(story.start()))
        self.assertEqual([["Buy"]],play(story.start(variables={"gold": 5})))

    def test_out_of_choices(self):
        runtime = kstory.read_story("Hi\n* {false} [Never] -> END\n").start()
        runtime.advance()
        with self.assertRaises(krun.OutOfChoicesError):
            runtime.advance()

    def test_divert_to_end(self):
        runtime = kstory.read_story("Done. -> END\nNever shown.\n").start()
        self.assertEqual(krun.OutputUnit("Done."),runtime.advance())
        self.assertEqual(krun.Ended(),runtime.advance())
        self.assertEqual(krun.ENDED,runtime.state)
        self.assertEqual(krun.Ended(),runtime.advance())

    def test_stitches_and_visit_counts(self):
        runtime = kstory.read_story(HOUSE_STORY).start("house")
        self.assertEqual(["In the kitchen.","In the garden."],play(runtime))
        self.assertEqual({"house": 1,"house.kitchen": 1,"house.garden": 1},
            runtime.visits)
        self.assertEqual(1,runtime.visit_count("house.garden"))

    def test_start_at_unknown_knot(self):
        story = kstory.read_story(HOUSE_STORY)
        with self.assertRaises(kstory.ResolutionError):
            story.start("cellar")

    def test_unknown_variable_override(self):
        story = kstory.read_story(LOOP_STORY)
        with self.assertRaises(kstory.ResolutionError):
            story.start(variables={"gold": 1})

    def test_variable_override_type_is_checked(self):
        story = kstory.read_story(LOOP_STORY)
        with self.assertRaises(ValueError):
            story.start(variables={"name": [1]})

    def test_variable_override(self):
        story = kstory.read_story(LOOP_STORY)
        self.assertEqual(["Hi Ann. one",["Again","Leave"]],
            play(story.start(variables={"name": "Ann"})))

    def test_select_out_of_range(self):
        runtime = kstory.read_story(LOOP_STORY).start()
        play(runtime)
        with self.assertRaises(krun.SelectionError):
            runtime.select(2)
        with self.assertRaises(krun.SelectionError):
            runtime.select(-1)
        self.assertEqual(krun.AWAITING_CHOICE,runtime.state)

    def test_select_when_not_awaiting_choice(self):
        runtime = kstory.read_story(LOOP_STORY).start()
        with self.assertRaises(krun.StoryStateError):
            runtime.select(0)

    def test_advance_when_awaiting_choice(self):
        runtime = kstory.read_story(LOOP_STORY).start()
        play(runtime)
        with self.assertRaises(krun.StoryStateError):
            runtime.advance()

    def test_loop_detection_leaves_state_unchanged(self):
        runtime = kstory.read_story("=== a ===\n-> b\n=== b ===\n-> a\n").start(
            max_steps=50)
        before = runtime.get_state()
        with self.assertRaises(krun.StoryLoopError):
            runtime.advance()
        self.assertEqual(before,runtime.get_state())

    def test_evaluation_error_leaves_state_unchanged(self):
        runtime = kstory.read_story('VAR word = "a"\n=== k ===\n{&x|y} {word - 1}\n').start()
        before = runtime.get_state()
        with self.assertRaises(km.EvaluationError):
            runtime.advance()
        self.assertEqual(before,runtime.get_state())
        self.assertEqual({},runtime.get_state()["sequences"])

    def test_glue_and_join_output(self):
        runtime = kstory.read_story("Hello <>\nworld.\n<> Again.\nNext\n").start()
        units = []
        while True:
            r = runtime.advance()
            if isinstance(r,krun.Ended): break
            units.append(r)
        self.assertTrue(units[0].glue)
        self.assertTrue(units[2].glue_begin)
        self.assertEqual("Hello world. Again.\nNext",krun.join_output(units))

    def test_tags_are_reported(self):
        runtime = kstory.read_story("Hello #greet\n* [Wave] #friendly\n").start()
        self.assertEqual(("greet",),runtime.advance().tags)
        self.assertEqual(krun.ChoiceSet([("Wave",("friendly",))]),runtime.advance())

    def test_runtimes_sharing_a_story_are_independent(self):
        story = kstory.read_story(LOOP_STORY)
        a = story.start()
        b = story.start()
        play(a,[0,0])
        self.assertEqual(krun.OutputUnit("Hi friend. one"),b.advance())

    def test_logs_choice_points(self):
        runtime = kstory.read_story(LOOP_STORY).start()
        with self.assertLogs("knotweave.run",level=logging.DEBUG) as cm:
            play(runtime)
        self.assertTrue(any("Presenting 2 choices" in m for m in cm.output))


class TestStatePersistence(unittest.TestCase):

    def test_initial_state(self):
        state = kstory.read_story(LOOP_STORY).start().get_state()
        self.assertEqual([[None,0]],state["frames"])
        self.assertEqual(krun.AT_LINE,state["state"])
        self.assertEqual({"loop": 1},state["visits"])

    def test_round_trip_reproduces_play(self):
        story = kstory.read_story(LOOP_STORY)
        original = story.start(variables={"name": "Ann"})
        play(original,[0])
        saved = io.StringIO()
        kio.StateIO.write(original,saved)
        restored = kio.StateIO.read(story,io.StringIO(saved.getvalue()))
        self.assertEqual(original.get_state(),restored.get_state())
        self.assertEqual(original.choices,restored.choices)
        for runtime in (original,restored):
            runtime.select(0)
        self.assertEqual(play(original,[0,1]),play(restored,[0,1]))

    def test_round_trip_inside_nested_choice(self):
        story = kstory.read_story(GATHER_STORY)
        original = story.start()
        play(original,[0])
        restored = story.restore(json.loads(json.dumps(original.get_state())))
        self.assertEqual(play(original,[1]),play(restored,[1]))

    def test_consumed_choices_survive_restore(self):
        story = kstory.read_story(HUB_STORY)
        original = story.start()
        play(original,[0])
        restored = story.restore(original.get_state())
        restored.select(0)
        self.assertEqual(["Back again.",["Right"]],play(restored))

    def test_restore_keeps_or_replaces_seed(self):
        story = kstory.read_story(LOOP_STORY)
        state = story.start(seed=3).get_state()
        self.assertEqual(3,story.restore(state).get_state()["seed"])
        self.assertEqual(1,story.restore(state,seed=1).get_state()["seed"])

    def test_invalid_json(self):
        story = kstory.read_story(LOOP_STORY)
        with self.assertRaises(krun.StoryStateError):
            kio.StateIO.read(story,io.StringIO("{nope"))

    def test_invalid_state(self):
        story = kstory.read_story(LOOP_STORY)
        state = story.start().get_state()
        state["frames"] = [[None,99]]
        with self.assertRaises(krun.StoryStateError):
            story.restore(state)

    def test_unsupported_version(self):
        story = kstory.read_story(LOOP_STORY)
        state = story.start().get_state()
        state["version"] = 99
        with self.assertRaises(krun.StoryStateError):
            story.restore(state)

    def test_writes_sorted_json(self):
        state = kstory.read_story(LOOP_STORY).start().get_state()
        out = io.StringIO()
        kio.StateIO.write(state,out)
        self.assertEqual(state,json.loads(out.getvalue()))


class TestStoryIO(unittest.TestCase):

    def test_reads_stream(self):
        story = kio.StoryIO.read(io.StringIO(HOUSE_STORY))
        self.assertEqual(["house"],story.knot_names)

    def test_read_delegates_to_read_story(self):
        with mock.patch("knotweave.story.read_story") as read_story:
            kio.StoryIO.read(io.StringIO("Hello"))
        read_story.assert_called_once_with("Hello")


class TestCommandLineRunner(unittest.TestCase):

    def do_run(self,text,input):
        i = io.StringIO(input)
        o = io.StringIO()
        krun.CommandLineRunner()._run(kstory.read_story(text).start(),i,o)
        return o.getvalue()

    def test_prints_text(self):
        self.assertEqual("Hello\nWorld\n",self.do_run("Hello\nWorld\n",""))

    def test_prints_choices(self):
        self.assertEqual("Hello\n\n1) Go\n\n> \nGone\n",
            self.do_run("Hello\n* [Go] Gone\n","1\n"))

    def test_honours_glue(self):
        self.assertEqual("Hello world.\n\n1) Go\n\n> \n",
            self.do_run("Hello <>\nworld.\n* [Go] -> END\n","1\n"))

    def test_validates_choice_selection(self):
        self.assertEqual("\n1) Go\n\n> \nInvalid choice\n\n> \nEnter a number\n\n> \n",
            self.do_run("* [Go] -> END\n","3\nx\n1\n"))

    def test_raises_runner_error_at_end_of_input(self):
        with self.assertRaises(krun.RunnerError):
            self.do_run("* [Go] -> END\n","")

    def test_invokes_readline_after_prompt(self):
        log = []
        def readline():
            log.append("readline")
            return "1\n"
        i = mock.Mock()
        i.readline.side_effect = readline
        o = mock.Mock()
        o.write.side_effect = lambda s: log.append("write %s" % s)
        krun.CommandLineRunner()._run(
            kstory.read_story("* [Go] -> END\n").start(),i,o)
        self.assertEqual(["write \n","write 1) Go\n","write \n","write > ",
            "readline","write \n"],log)

    def test_resumes_awaiting_choice(self):
        story = kstory.read_story(LOOP_STORY)
        runtime = story.start()
        play(runtime)
        o = io.StringIO()
        krun.CommandLineRunner()._run(runtime,io.StringIO("2\n"),o)
        self.assertEqual("\n1) Again\n2) Leave\n\n> \n",o.getvalue())


class TestMainHelpers(unittest.TestCase):

    def setUp(self):
        import knotweave.__main__ as kmain
        self.kmain = kmain

    def test_parses_variables(self):
        self.assertEqual({"gold": 5,"name": "Ann","rich": True,"rate": 0.5},
            self.kmain._variables("gold=5, name=Ann,rich=true,rate=0.5"))

    def test_quoted_values_stay_strings(self):
        self.assertEqual({"code": "12"},self.kmain._variables('code="12"'))

    def test_missing_equals_is_an_error(self):
        with self.assertRaises(ValueError):
            self.kmain._variables("gold")

    def test_saves_state(self):
        runtime = kstory.read_story(LOOP_STORY).start()
        opener = mock.mock_open()
        with mock.patch("knotweave.__main__.open",opener,create=True):
            self.kmain._save(runtime,"save.json")
        opener.assert_called_once_with("save.json","w",encoding="utf-8")
        written = "".join(c[0][0] for c in opener().write.call_args_list)
        self.assertEqual(runtime.get_state(),json.loads(written))

    def test_save_without_filename_does_nothing(self):
        opener = mock.mock_open()
        with mock.patch("knotweave.__main__.open",opener,create=True):
            self.kmain._save(mock.Mock(),None)
        self.assertFalse(opener.called)


if __name__ == "__main__":
    unittest.main()
