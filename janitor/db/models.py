"""Synapse tables touched by the janitor.

The schema belongs to Synapse; these mappings only describe the columns the
janitor reads or deletes from. ``Base.metadata.create_all`` is used by the
test suite, never against a live homeserver database.
"""

from sqlalchemy import BigInteger, Column, Index, Text

from janitor.db.base import Base


class StateGroup(Base):
    __tablename__ = "state_groups"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    room_id = Column(Text, nullable=False, index=True)
    event_id = Column(Text, nullable=False)


class StateGroupEdge(Base):
    __tablename__ = "state_group_edges"

    state_group = Column(BigInteger, primary_key=True, autoincrement=False)
    prev_state_group = Column(BigInteger, primary_key=True, autoincrement=False)


class EventToStateGroup(Base):
    __tablename__ = "event_to_state_groups"

    event_id = Column(Text, primary_key=True)
    state_group = Column(BigInteger, nullable=False, index=True)


class StateGroupsState(Base):
    __tablename__ = "state_groups_state"
    __table_args__ = (Index("state_groups_state_type_idx", "state_group", "type", "state_key"),)

    state_group = Column(BigInteger, primary_key=True, autoincrement=False)
    room_id = Column(Text, nullable=False)
    type = Column(Text, primary_key=True)
    state_key = Column(Text, primary_key=True)
    event_id = Column(Text, nullable=True)
